import os
import platform

from configobj import ConfigObj, ConfigObjError, flatten_errors
from configobj.validate import Validator

# The default extension for configuration files
config_extension = '.cfg'

# the name of the configuration files shipped with this package and of the user's file
config_name = 'scanbutton'

config_directory = os.path.dirname(__file__)


def config_flavor(name, flavor=None):
    """
    >>> config_flavor('scanbutton', 'schema')
    'scanbutton.schema'
    """
    return name if not flavor else name + '.' + flavor


def config_filename(name, directory=None):
    """
    Determines the location of a config file in a directory.
    """
    return os.path.join(directory, name + config_extension)


def load_config_file_base(file, must_exist=True):
    """
    Loads a configuration file
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or an exception is thrown.
    :return: The ConfigObj instance for the file.
    """
    try:
        return ConfigObj(file, interpolation='Template', file_error=must_exist) \
            if must_exist or os.path.exists(file) else ConfigObj()
    except ConfigObjError as e:
        raise type(e)(str(e) + ' at ' + file)


def config_flavor_file(name, directory, subpart=None) -> ConfigObj:
    """
    Loads a specialization of a config file. The file is named after the base, followed by a
    period and then the specialization. A missing file gives an empty configuration.
    """
    return load_config_file_base(config_filename(config_flavor(name, subpart), directory), False)


def map_os_name(name):
    """
    >>> map_os_name('Windows')
    'windows'
    >>> map_os_name("Darwin")
    'osx'
    """
    name = name.lower()
    if name == 'darwin':
        name = 'osx'
    return name


def os_name():
    return map_os_name(platform.system())


def user_config_file(name=config_name):
    return os.path.expanduser('~/.' + name + config_extension)


def load_config(name=config_name, directory=config_directory, user_file=None, config_file=None):
    """
    Loads all the configuration files that relate to the given name.
    Configurations are merged in this order, later ones overriding earlier ones:
    - the default configuration
    - the platform specialization
    - the user's file, ~/.<name>.cfg unless user_file is given
    - config_file, which must exist when given
    The result is validated against the "schema" specialization, which also converts the values
    to their types and fills in the missing ones.
    :raises ConfigObjError: when a file cannot be parsed or the values do not validate
    """
    config = ConfigObj(interpolation='Template', configspec=config_filename(config_flavor(name, 'schema'), directory))
    config.merge(config_flavor_file(name, directory, 'default'))
    config.merge(config_flavor_file(name, directory, os_name()))
    config.merge(load_config_file_base(user_file or user_config_file(name), must_exist=False))
    if config_file:
        config.merge(load_config_file_base(config_file, must_exist=True))

    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        raise ConfigObjError("the config file %s failed validation: %s" % (config_file or name,
                                                                          '; '.join(describe_errors(config, result))))
    return config


def describe_errors(config, result):
    for sections, key, error in flatten_errors(config, result):
        path = '.'.join(sections + ([key] if key else []))
        yield "%s: %s" % (path, error or 'missing')


def fetch_conf_path(conf, path):
    """
    Retrieves the named configuration section
    :param conf:    The root configuration
    :param path:    An iterable that lists the names of the sections to resolve, or a dotted name
    :return: The configuration section identified by the path, or None
    """
    if isinstance(path, str):
        path = path.split('.')
    for p in path:
        conf = conf.get(p, None)
        if conf is None:
            return None
    return conf


def apply_conf(conf, target):
    """
    Sets the attributes of target that have the same name as a configured value.
    Attributes that are already set to something other than None are left alone.
    """
    for k, v in conf.items():
        if hasattr(target, k) and getattr(target, k) is None:
            setattr(target, k, v)
    return target
