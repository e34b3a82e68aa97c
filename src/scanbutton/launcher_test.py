import sys
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import Mock

from hamcrest import assert_that, calling, has_entries, is_, none, raises

from scanbutton.launcher import CommandLauncher, dispatch
from scanbutton.listener import ButtonEvent
from scanbutton.mapping import AdfOrientation, AdfType, ColorMode, Dpi, Format, Page, ScanConfiguration, Source
from scanbutton.protocol.payloads import RawStatus

CONFIG = ScanConfiguration(ColorMode.COLOR, Page.A4, Format.PDF, Dpi.DPI_300, Source.FLATBED,
                           AdfType.SIMPLEX, AdfOrientation.PORTRAIT)


class CommandLauncherTest(TestCase):

    def setUp(self):
        self.popen = Mock()
        self.popen.return_value.pid = 1234
        self.popen.return_value.poll.return_value = None
        self.log = Mock()
        self.sut = CommandLauncher(['/usr/local/bin/scan-to-pdf', '--dest', '/srv/scans'], {'PATH': '/usr/bin'},
                                   self.popen, self.log)

    def test_requires_a_command(self):
        assert_that(calling(CommandLauncher).with_args([]), raises(ValueError))

    def test_launch_adds_configuration_to_environment(self):
        self.sut.launch(CONFIG)
        args, kwargs = self.popen.call_args
        assert_that(args, is_((['/usr/local/bin/scan-to-pdf', '--dest', '/srv/scans'],)))
        assert_that(kwargs['env'], is_({
            'PATH': '/usr/bin',
            'SCANNER_COLOR_MODE': 'COLOR',
            'SCANNER_PAGE': 'A4',
            'SCANNER_FORMAT': 'PDF',
            'SCANNER_DPI': '300',
            'SCANNER_SOURCE': 'FLATBED',
            'SCANNER_ADF_TYPE': 'SIMPLEX',
            'SCANNER_ADF_ORIENT': 'PORTRAIT',
        }))

    def test_defaults_to_process_environment(self):
        sut = CommandLauncher(['true'], popen=self.popen)
        env = sut.environment(CONFIG)
        assert_that(env, has_entries(SCANNER_DPI='300'))
        assert_that(len(env) >= 7, is_(True))

    def test_spawn_failure_is_logged(self):
        self.popen.side_effect = FileNotFoundError(2, 'No such file or directory')
        assert_that(self.sut.launch(CONFIG), is_(none()))
        assert_that(self.log.error.call_count, is_(1))

    def test_finished_processes_are_reaped(self):
        self.sut.launch(CONFIG)
        assert_that(len(self.sut.processes), is_(1))
        self.popen.return_value.poll.return_value = 0
        self.sut.launch(CONFIG)
        assert_that(len(self.sut.processes), is_(1))

    def test_runs_a_real_process(self):
        sut = CommandLauncher([sys.executable, '-c', 'import os, sys; sys.exit(os.environ["SCANNER_PAGE"] != "A4")'])
        process = sut.launch(CONFIG)
        assert_that(process.wait(timeout=30), is_(0))


async def events(*statuses):
    for i, status in enumerate(statuses):
        yield ButtonEvent(status, i + 1)


class DispatchTest(IsolatedAsyncioTestCase):

    async def test_launches_per_event_and_drops_unknown_settings(self):
        launcher = Mock()
        log = Mock()
        statuses = [RawStatus(1, 1, 3, 3, 1), RawStatus(1, 0x42, 3, 3, 1), RawStatus(2, 2, 1, 1, 2, 2, 2)]
        launched = await dispatch(events(*statuses), launcher, log)
        assert_that(launched, is_(2))
        assert_that(launcher.launch.call_count, is_(2))
        assert_that(launcher.launch.call_args_list[1].args[0].source, is_(Source.FEEDER))
        log.warning.assert_called_once_with("ignoring button press with unknown page code 0x42")

    async def test_spawn_failures_continue(self):
        launcher = Mock()
        launcher.launch.return_value = None
        launched = await dispatch(events(RawStatus(1, 1, 3, 3, 1), RawStatus(1, 1, 3, 3, 1)), launcher, Mock())
        assert_that(launched, is_(0))
        assert_that(launcher.launch.call_count, is_(2))
