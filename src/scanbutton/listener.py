"""
Listens for scan button presses on one device.

A connection is a session after the handshake: DISCOVER to check the device is there, then a
HOST_ONLY poll that registers the host name and returns the session id. The listener then
sends a FULL poll every poll interval. The device answers with the next session id, or with
the button status and an action id when the button was pressed; a press is acknowledged with
a RESET poll carrying the action id.
"""
import logging
import socket
from datetime import datetime

from scanbutton.conduit.session import RequestDecodeError, RequestError, RequestTimeoutError, format_address, \
    open_session
from scanbutton.connection_maintenance import BackoffController
from scanbutton.protocol.packet import Command
from scanbutton.protocol.payloads import PollRequest, RawStatus
from scanbutton.support.cancellation import CancellationToken, ShutdownRequested
from scanbutton.support.mixins import CommonEqualityMixin, StringerMixin

logger = logging.getLogger(__name__)


class ButtonEvent(CommonEqualityMixin, StringerMixin):
    """ A button press: the raw scan settings and the action id the device assigned to it. """

    def __init__(self, status: RawStatus, action_id, session_id=None):
        self.status = status
        self.action_id = action_id
        self.session_id = session_id


class Connection:
    """ An open session that completed the handshake. """

    def __init__(self, session, session_id):
        self.session = session
        self.session_id = session_id
        self.missed_polls = 0

    def close(self):
        self.session.close()

    def __str__(self):
        return "%s session_id=%s" % (self.session, self.session_id)


class EventListener:
    """
    Produces the button presses of one device through events(), reconnecting with backoff
    whenever the device stops answering.

    :param address: (host, port) of the device
    :param hostname: the name shown on the device display, defaults to the local host name
    :param token: shutdown signal; setting it ends events()
    :param max_waiting: seconds to wait for each response
    :param poll_interval: seconds between polls
    :param max_missed_polls: consecutive unanswered polls after which the link is considered lost
    """

    def __init__(self, address, hostname=None, token: CancellationToken=None, retry_strategy=None,
                 max_waiting=5, poll_interval=1, max_missed_polls=3, connect=open_session, clock=datetime.now,
                 sleep=None, log=logger):
        self.address = address
        self.hostname = hostname or socket.gethostname()
        self.token = token or CancellationToken()
        self.max_waiting = max_waiting
        self.poll_interval = poll_interval
        self.max_missed_polls = max(1, max_missed_polls)
        self._open_session = connect
        self._clock = clock
        self.log = log
        self.controller = BackoffController(format_address(address), self._connect, retry_strategy, self.token,
                                            sleep, log)

    async def _connect(self) -> Connection:
        session = await self._open_session(self.address, self.token, log=self.log)
        try:
            await session.request(Command.DISCOVER, None, self.max_waiting)
            _, response = await session.request(Command.POLL_BUTTON, PollRequest.host_only(self.hostname),
                                                self.max_waiting)
            if response.button_pressed:
                raise RequestDecodeError("unexpected button event during the handshake")
        except BaseException:
            session.close()
            raise
        self.log.debug("handshake with %s complete, session id %d" % (format_address(self.address),
                                                                       response.session_id))
        return Connection(session, response.session_id)

    async def events(self):
        """
        Yields a ButtonEvent for each button press until shutdown is requested.
        Each press is acknowledged to the device when the consumer asks for the next event.
        """
        try:
            while True:
                connection = await self.controller.connected()
                try:
                    while True:
                        event = await self._poll(connection)
                        if event is not None:
                            yield event
                            await self._acknowledge(connection, event)
                        await self.token.sleep(self.poll_interval)
                except RequestError as e:
                    await self.controller.failed(e)
        except ShutdownRequested:
            self.log.info("stopped listening to %s" % format_address(self.address))
        finally:
            self.controller.shutdown()

    async def _poll(self, connection: Connection):
        """ :return: the ButtonEvent if the button was pressed, otherwise None """
        request = PollRequest.full(connection.session_id, self.hostname, self._clock())
        try:
            _, response = await connection.session.request(Command.POLL_BUTTON, request, self.max_waiting)
        except RequestTimeoutError:
            connection.missed_polls += 1
            if connection.missed_polls >= self.max_missed_polls:
                raise
            self.log.debug("poll %d of %d unanswered" % (connection.missed_polls, self.max_missed_polls))
            return None
        connection.missed_polls = 0
        if response.session_id is not None:
            connection.session_id = response.session_id
        if not response.button_pressed:
            return None
        event = ButtonEvent(response.interrupt, response.action_id, connection.session_id)
        self.log.info("button pressed on %s, action %d" % (format_address(self.address), event.action_id))
        return event

    async def _acknowledge(self, connection: Connection, event: ButtonEvent):
        request = PollRequest.reset(connection.session_id, self.hostname, event.action_id)
        await connection.session.request(Command.POLL_BUTTON, request, self.max_waiting)
        self.log.debug("acknowledged action %d" % event.action_id)
