"""
Translation of the raw codes a device reports with a button press into a scan configuration.
"""
from enum import Enum

from scanbutton.protocol.payloads import RawStatus
from scanbutton.support.mixins import CommonEqualityMixin, StringerMixin


class MappingError(ValueError):
    """ A raw status field holds a code with no known meaning. """

    def __init__(self, field, raw_value):
        super().__init__("unknown %s code %#04x" % (field, raw_value))
        self.field = field
        self.raw_value = raw_value


UnknownFieldError = MappingError


class ColorMode(Enum):
    COLOR = 'COLOR'
    MONO = 'MONO'


class Page(Enum):
    A4 = 'A4'
    LETTER = 'LETTER'
    SIZE_10X15 = '10x15'
    SIZE_13X18 = '13x18'
    AUTO = 'AUTO'


class Format(Enum):
    JPEG = 'JPEG'
    TIFF = 'TIFF'
    PDF = 'PDF'
    KOMPAKT_PDF = 'KOMPAKT_PDF'


class Dpi(Enum):
    DPI_75 = 75
    DPI_150 = 150
    DPI_300 = 300
    DPI_600 = 600


class Source(Enum):
    FLATBED = 'FLATBED'
    FEEDER = 'FEEDER'


class AdfType(Enum):
    SIMPLEX = 'SIMPLEX'
    DUPLEX = 'DUPLEX'


class AdfOrientation(Enum):
    PORTRAIT = 'PORTRAIT'
    LANDSCAPE = 'LANDSCAPE'


# raw code tables, keyed by the RawStatus attribute they decode
# 0 in the feeder fields means the device did not report them
codes = {
    'color_mode': {0x01: ColorMode.COLOR, 0x02: ColorMode.MONO},
    'page': {0x01: Page.A4, 0x02: Page.LETTER, 0x08: Page.SIZE_10X15, 0x09: Page.SIZE_13X18, 0x0b: Page.AUTO},
    'format': {0x01: Format.JPEG, 0x02: Format.TIFF, 0x03: Format.PDF, 0x04: Format.KOMPAKT_PDF},
    'dpi': {0x01: Dpi.DPI_75, 0x02: Dpi.DPI_150, 0x03: Dpi.DPI_300, 0x04: Dpi.DPI_600},
    'source': {0x01: Source.FLATBED, 0x02: Source.FEEDER},
    'adf_type': {0x00: AdfType.SIMPLEX, 0x01: AdfType.SIMPLEX, 0x02: AdfType.DUPLEX},
    'adf_orientation': {0x00: AdfOrientation.PORTRAIT, 0x01: AdfOrientation.PORTRAIT,
                        0x02: AdfOrientation.LANDSCAPE},
}


class ScanConfiguration(CommonEqualityMixin, StringerMixin):
    """ The scan settings chosen on the device panel. Every field is always set. """

    def __init__(self, color_mode: ColorMode, page: Page, format: Format, dpi: Dpi, source: Source,
                 adf_type: AdfType=AdfType.SIMPLEX, adf_orientation: AdfOrientation=AdfOrientation.PORTRAIT):
        self.color_mode = color_mode
        self.page = page
        self.format = format
        self.dpi = dpi
        self.source = source
        self.adf_type = adf_type
        self.adf_orientation = adf_orientation

    def environment(self):
        """
        The variables passed to the command launched for a button press.
        >>> ScanConfiguration(ColorMode.MONO, Page.AUTO, Format.PDF, Dpi.DPI_300, Source.FLATBED).environment()['SCANNER_DPI']
        '300'
        """
        return {
            'SCANNER_COLOR_MODE': self.color_mode.value,
            'SCANNER_PAGE': self.page.value,
            'SCANNER_FORMAT': self.format.value,
            'SCANNER_DPI': str(self.dpi.value),
            'SCANNER_SOURCE': self.source.value,
            'SCANNER_ADF_TYPE': self.adf_type.value,
            'SCANNER_ADF_ORIENT': self.adf_orientation.value,
        }

    def summary(self):
        """ a one line description for the log """
        s = "%s %s %s %d dpi from %s" % (self.color_mode.value.lower(), self.page.value, self.format.value,
                                         self.dpi.value, self.source.value.lower())
        if self.source is Source.FEEDER:
            s += " (%s, %s)" % (self.adf_type.value.lower(), self.adf_orientation.value.lower())
        return s


def map_field(field, raw_value):
    try:
        return codes[field][raw_value]
    except KeyError:
        raise MappingError(field, raw_value) from None


def map_status(raw: RawStatus) -> ScanConfiguration:
    """
    Maps every raw field, raising MappingError for the first code that is not known.
    """
    return ScanConfiguration(**{field: map_field(field, getattr(raw, field)) for field in codes})
