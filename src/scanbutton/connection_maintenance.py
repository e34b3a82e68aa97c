import asyncio
import logging
from enum import Enum

from scanbutton.conduit.session import ConnectError, RequestError
from scanbutton.support.cancellation import ShutdownRequested
from scanbutton.support.events import EventSource
from scanbutton.support.mixins import CommonEqualityMixin, StringerMixin
from scanbutton.support.retry_strategy import ExponentialBackoffStrategy, RetryStrategy

logger = logging.getLogger(__name__)


class ConnectionState(Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    BACKING_OFF = 'backing off'


# the states each state may move to
transitions = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING},
    ConnectionState.CONNECTING: {ConnectionState.CONNECTED, ConnectionState.BACKING_OFF,
                                 ConnectionState.DISCONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.BACKING_OFF, ConnectionState.DISCONNECTED},
    ConnectionState.BACKING_OFF: {ConnectionState.CONNECTING, ConnectionState.DISCONNECTED},
}


class IllegalTransitionError(RuntimeError):
    """ The controller was asked to move between states that are not connected in the transition table. """


class ConnectionStateEvent(CommonEqualityMixin, StringerMixin):
    """
    Fired on every state change of a BackoffController.
    :param wait: the seconds until the next attempt, when entering BACKING_OFF
    :param error: the failure that caused the change, if any
    """

    def __init__(self, resource, previous: ConnectionState, state: ConnectionState, wait=None, error=None):
        self.resource = resource
        self.previous = previous
        self.state = state
        self.wait = wait
        self.error = error


class BackoffController:
    """
    Maintains a connection to one device, waiting longer after each consecutive failure to connect.

    connected() returns the current connection, making attempts until one succeeds. When the
    connection fails while in use, the user calls failed(), which discards it and waits before
    the next attempt. The wait is reset once a connection succeeds.

    :param resource: identifies the device in the log and in the events
    :param connect: a coroutine function returning a new connection. The connection must have close().
        ConnectError and RequestError are failed attempts; other exceptions propagate.
    :param retry_strategy: decides the wait after each failure
    :param sleep: a coroutine function used to wait. Defaults to token.sleep when there is a token.
    """

    def __init__(self, resource, connect, retry_strategy: RetryStrategy=None, token=None, sleep=None, log=logger):
        self.resource = resource
        self._connect = connect
        self.retry_strategy = retry_strategy or ExponentialBackoffStrategy(5, 2, 1800)
        self.token = token
        self._sleep = sleep or (token.sleep if token is not None else asyncio.sleep)
        self.log = log
        self.events = EventSource()
        self.state = ConnectionState.DISCONNECTED
        self.connection = None
        self._shutdown = False

    def _transition(self, state: ConnectionState, wait=None, error=None):
        previous = self.state
        if state not in transitions[previous]:
            raise IllegalTransitionError("%s cannot go from %s to %s" % (self.resource, previous.value, state.value))
        self.state = state
        self.log.debug("%s: %s -> %s" % (self.resource, previous.value, state.value))
        self.events.fire(ConnectionStateEvent(self.resource, previous, state, wait, error))

    async def connected(self):
        """
        Returns the connection, connecting first if there is none.
        Retries forever, so this only ends with a connection or when shutdown is requested.
        """
        if self.state is ConnectionState.CONNECTED:
            return self.connection
        while True:
            if self._shutdown:
                raise ShutdownRequested()
            if self.token is not None:
                self.token.check()
            self._transition(ConnectionState.CONNECTING)
            try:
                connection = await self._connect()
            except (ConnectError, RequestError) as e:
                await self._back_off(e)
                continue
            self.connection = connection
            self.retry_strategy.reset()
            self._transition(ConnectionState.CONNECTED)
            self.log.info("connected to %s" % self.resource)
            return connection

    async def failed(self, error):
        """
        Discards the current connection after it failed, and waits before the next attempt.
        """
        if self.state is not ConnectionState.CONNECTED:
            raise IllegalTransitionError("%s is not connected" % self.resource)
        self._discard()
        self.log.warning("lost connection to %s: %s" % (self.resource, error))
        await self._back_off(error)

    async def _back_off(self, error):
        wait = self.retry_strategy.failed()
        self._transition(ConnectionState.BACKING_OFF, wait, error)
        self.log.warning("unable to connect to %s: %s, retrying in %s seconds" % (self.resource, error, wait))
        await self._sleep(wait)

    def _discard(self):
        connection, self.connection = self.connection, None
        if connection is not None:
            connection.close()

    def shutdown(self):
        """ Closes the connection and stops further attempts. Safe to call more than once. """
        if self._shutdown:
            return
        self._shutdown = True
        self._discard()
        if self.state is not ConnectionState.DISCONNECTED:
            self._transition(ConnectionState.DISCONNECTED)
        self.log.debug("stopped maintaining the connection to %s" % self.resource)
