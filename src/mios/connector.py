import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from enum import Enum

from mios.registry import UnitDescriptor
from mios.session import UnitSession
from mios.support.events import EventSource
from mios.support.retry_strategy import BackoffRetryStrategy, RetryStrategy

logger = logging.getLogger(__name__)


class ConnectorError(Exception):
    """ Indicates an error condition with a connector. """


class NotConnected(ConnectorError):
    """ A command was given to a connector that is not connected. """


class Cancelled(ConnectorError):
    """ A command was abandoned because its connector was closed. """


class ConnectorState(Enum):
    IDLE = 'idle'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    BROKEN = 'broken'
    CLOSED = 'closed'


class ConnectorStateChanged:
    """ Fired by a connector when its state changes. """

    def __init__(self, connector, old_state, new_state):
        self.connector = connector
        self.old_state = old_state
        self.new_state = new_state

    def __repr__(self):
        return "ConnectorStateChanged(%s: %s -> %s)" % (self.connector.name, self.old_state.value,
                                                        self.new_state.value)


class CommandFuture(Future):
    """ The future outcome of delivering a command to a unit. """

    def __init__(self, descriptor, command, current_state=None):
        super().__init__()
        self.descriptor = descriptor
        self.command = command
        self.current_state = current_state


class UnitConnector:
    """
    Maintains the session to one MiOS unit.

    The connector moves through these states:

        IDLE -open()-> CONNECTING -session opened-> CONNECTED -session down-> BROKEN
        CONNECTING -failure-> BROKEN -reconnected by poll()-> CONNECTED
        any state -close()-> CLOSED

    The connector has no timer of its own: poll() is called regularly by the manager, and
    reconnection attempts are paced by the retry strategy. Work that touches the session runs
    on the given executor, and only one such operation runs at a time. Commands are delivered
    in the order they were given to invoke().

    Updates pushed by the session are handed to `route(unit_name, property, value)` on the
    session's own thread, without holding the session lock.

    Fires ConnectorStateChanged events as the state changes.

    :param unit:    the UnitDescriptor of the unit to connect to
    :param session: the UnitSession used to reach the unit
    :param route:   called with each update pushed by the unit
    :param executor: runs connection attempts and command delivery
    :param retry_strategy: paces reconnection attempts. Defaults to exponential backoff bounded
        by the unit timeout.
    """

    def __init__(self, unit: UnitDescriptor, session: UnitSession, route, executor,
                 retry_strategy: RetryStrategy=None, clock=time.time, log=logger):
        self.unit = unit
        self.session = session
        self.events = EventSource()
        self.retry_strategy = retry_strategy or BackoffRetryStrategy.for_timeout(unit.timeout)
        self.logger = log
        self._route = route
        self._executor = executor
        self._clock = clock
        self._session_lock = threading.RLock()      # serializes all use of the session
        self._state_lock = threading.RLock()        # guards state and the command queues
        self._state = ConnectorState.IDLE
        self._commands = deque()
        self._in_flight = None
        self._draining = False
        session.set_event_sink(self.on_event)

    @property
    def name(self):
        return self.unit.name

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def connected(self):
        return self._state is ConnectorState.CONNECTED

    def __repr__(self):
        return "UnitConnector(%s, %s)" % (self.name, self._state.value)

    def _transition(self, new_state, expected=None):
        """
        Moves to new_state unless closed, or unless the current state is not one of expected.
        :return: True if the state changed
        """
        with self._state_lock:
            old_state = self._state
            if old_state is ConnectorState.CLOSED or old_state is new_state:
                return False
            if expected is not None and old_state not in expected:
                return False
            self._state = new_state
        self.logger.info("unit=%s state %s -> %s" % (self.name, old_state.value, new_state.value))
        self.events.fire(ConnectorStateChanged(self, old_state, new_state))
        return True

    def open(self):
        """
        Starts connecting to the unit, without waiting for the outcome. Does nothing when
        already connecting or connected. A broken connector is reconnected by poll().
        """
        if not self._transition(ConnectorState.CONNECTING, (ConnectorState.IDLE,)):
            self.logger.debug("unit=%s open() ignored in state %s" % (self.name, self._state.value))
            return False
        try:
            self._executor.submit(self._connect)
        except Exception:
            self._transition(ConnectorState.IDLE, (ConnectorState.CONNECTING,))
            raise
        return True

    def _connect(self):
        with self._session_lock:
            if self._state is not ConnectorState.CONNECTING:
                return
            alive = self._open_session()
            self._transition(ConnectorState.CONNECTED if alive else ConnectorState.BROKEN,
                             (ConnectorState.CONNECTING,))

    def _open_session(self):
        """ opens the session, noting the outcome with the retry strategy. Called with the session lock held. """
        try:
            self.session.open(self.unit)
            alive = self.session.is_alive()
        except Exception as e:
            self.logger.warning("unit=%s host=%s connection failed: %s" % (self.name, self.unit.hostname, e))
            alive = False
        if alive:
            self.retry_strategy.reset()
        else:
            self.retry_strategy.failed(self._clock())
        return alive

    def _broken(self, reason):
        """ notes the session is down. Called with the session lock held. """
        self.logger.warning("unit=%s connection lost: %s" % (self.name, reason))
        self.retry_strategy.failed(self._clock())
        self._transition(ConnectorState.BROKEN, (ConnectorState.CONNECTED,))

    def poll(self):
        """
        Called regularly to maintain the connection. A broken connector tries to reconnect
        once the retry strategy allows; a connected one checks the session is still alive.
        Returns immediately when another operation holds the session.
        :return: True if the session was used
        """
        if not self._session_lock.acquire(blocking=False):
            self.logger.debug("unit=%s busy, poll skipped" % self.name)
            return False
        try:
            state = self._state
            if state is ConnectorState.BROKEN:
                if self.retry_strategy(self._clock()) > 0:
                    return False
                self._reconnect()
            elif state is ConnectorState.CONNECTED:
                try:
                    self.session.poll()
                    alive = self.session.is_alive()
                except Exception as e:
                    self._broken(e)
                else:
                    if not alive:
                        self._broken("session reports down")
            else:
                return False
            return True
        finally:
            self._session_lock.release()

    def _reconnect(self):
        self.logger.debug("unit=%s broken, attempting to reconnect" % self.name)
        try:
            self.session.close()
        except Exception as e:
            self.logger.debug("unit=%s error closing broken session: %s" % (self.name, e))
        if self._open_session():
            self._transition(ConnectorState.CONNECTED, (ConnectorState.BROKEN,))

    def invoke(self, descriptor, command, current_state=None) -> CommandFuture:
        """
        Queues a command for delivery to the unit.
        :return: a future that completes when the command has been delivered. It fails with
            Cancelled if the connector is closed first, or with the session's error.
        :raises NotConnected: when the connector is not connected
        """
        future = CommandFuture(descriptor, command, current_state)
        with self._state_lock:
            if self._state is not ConnectorState.CONNECTED:
                raise NotConnected("unit %s is %s" % (self.name, self._state.value))
            self._commands.append(future)
            start = not self._draining
            self._draining = True
        if start:
            try:
                self._executor.submit(self._drain)
            except Exception:
                with self._state_lock:
                    self._draining = False
                    if future in self._commands:
                        self._commands.remove(future)
                raise
        return future

    def _drain(self):
        """ delivers queued commands, in order, until the queue is empty """
        while True:
            with self._state_lock:
                if not self._commands:
                    self._draining = False
                    return
                future = self._commands.popleft()
                self._in_flight = future
            try:
                self._deliver(future)
            finally:
                with self._state_lock:
                    self._in_flight = None

    def _deliver(self, future: CommandFuture):
        with self._session_lock:
            if future.done():
                return
            if self._state is not ConnectorState.CONNECTED:
                self._settle(future, exception=NotConnected("unit %s is %s" % (self.name, self._state.value)))
                return
            try:
                self.session.invoke(future.descriptor, future.command, future.current_state)
            except Exception as e:
                self._broken(e)
                self._settle(future, exception=e)
            else:
                self.logger.debug("unit=%s item=%s command=%s delivered" %
                                  (self.name, future.descriptor.item_name, future.command))
                self._settle(future, result=True)

    def _settle(self, future, result=None, exception=None):
        with self._state_lock:
            if future.done():
                return
            if exception is not None:
                future.set_exception(exception)
            else:
                future.set_result(result)

    def close(self):
        """
        Closes the session. Queued and in-flight commands fail with Cancelled.
        The connector cannot be used afterwards.
        """
        with self._state_lock:
            old_state = self._state
            if old_state is ConnectorState.CLOSED:
                return
            self._state = ConnectorState.CLOSED
            pending = list(self._commands)
            self._commands.clear()
            if self._in_flight is not None:
                pending.append(self._in_flight)
        for future in pending:
            self._settle(future, exception=Cancelled("unit %s closed" % self.name))
        self.logger.info("unit=%s state %s -> %s" % (self.name, old_state.value, ConnectorState.CLOSED.value))
        self.events.fire(ConnectorStateChanged(self, old_state, ConnectorState.CLOSED))
        with self._session_lock:
            try:
                self.session.close()
            except Exception as e:
                self.logger.exception("unit=%s error closing session: %s" % (self.name, e))

    def on_event(self, property, value):
        """ receives an update pushed by the session and passes it on for routing """
        if self._state is ConnectorState.CLOSED:
            self.logger.debug("unit=%s closed, update for property=%s dropped" % (self.name, property))
            return
        try:
            self._route(self.name, property, value)
        except Exception as e:
            self.logger.exception("unit=%s property=%s routing failed: %s" % (self.name, property, e))
