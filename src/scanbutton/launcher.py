import logging
import os
import subprocess

from scanbutton.mapping import MappingError, ScanConfiguration, map_status

logger = logging.getLogger(__name__)


class CommandLauncher:
    """
    Starts a command for each button press, with the scan configuration in SCANNER_* environment variables.
    The command is not waited for; finished processes are reaped on the next launch.
    """

    def __init__(self, args, env=None, popen=subprocess.Popen, log=logger):
        """
        :param args: the command and its arguments
        :param env: the environment the variables are added to, by default the environment of this process
        """
        if not args:
            raise ValueError("no command to launch")
        self.args = list(args)
        self.env = env
        self._popen = popen
        self.log = log
        self.processes = []

    def environment(self, config: ScanConfiguration):
        env = dict(os.environ if self.env is None else self.env)
        env.update(config.environment())
        return env

    def launch(self, config: ScanConfiguration):
        """
        :return: the process, or None when the command could not be started
        """
        self._reap()
        try:
            process = self._popen(self.args, env=self.environment(config))
        except OSError as e:
            self.log.error("unable to launch %s: %s" % (self.args[0], e))
            return None
        self.log.info("launched %s (pid %s) for %s" % (self.args[0], process.pid, config.summary()))
        self.processes.append(process)
        return process

    def _reap(self):
        running = []
        for process in self.processes:
            code = process.poll()
            if code is None:
                running.append(process)
            else:
                self.log.debug("%s (pid %s) exited with %s" % (self.args[0], process.pid, code))
        self.processes = running


async def dispatch(events, launcher: CommandLauncher, log=logger):
    """
    Launches the command for each button event. Events with unknown settings are dropped.
    :return: the number of commands launched
    """
    launched = 0
    async for event in events:
        try:
            config = map_status(event.status)
        except MappingError as e:
            log.warning("ignoring button press with %s" % e)
            continue
        if launcher.launch(config) is not None:
            launched += 1
    return launched
