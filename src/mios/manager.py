"""
The connector manager ties the MiOS units to the host.

- UnitRegistry - the configured units, replaced on each configuration reload.
- BindingIndex - which item is bound to which property on which unit.
- UnitConnector - one per unit in use, created when an item bound to the unit is first
  watched or commanded, and maintained by the periodic tick().
- PropertyFanout - turns updates pushed by a unit into item states for the subscribers.

Inbound:  session -> UnitConnector.on_event -> ConnectorManager.route -> PropertyFanout -> subscribers.emit
Outbound: host -> ConnectorManager.dispatch_command -> UnitConnector.invoke -> session.invoke
"""
import logging
import threading
import time
from abc import abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError

from mios.binding import BindingDescriptor
from mios.coercion import TypeCoercer
from mios.config.config import parse_units
from mios.connector import ConnectorState, NotConnected, UnitConnector
from mios.fanout import PropertyFanout
from mios.index import BindingIndex
from mios.registry import UnitRegistry
from mios.support.events import EventSource
from mios.support.loop import PeriodicLoop

logger = logging.getLogger(__name__)

# the refresh interval used to check for lost connections, in seconds
default_refresh_interval = 10

# how long tick() waits for a unit with no timeout configured, in seconds
default_poll_timeout = 10


class UnknownUnit(LookupError):
    """ An item is bound to a unit that is not configured. """


class SubscriberRegistry:
    """ The host side: receives the states of bound items. """

    @abstractmethod
    def emit(self, item_name, state):
        """ posts the new state of the item """
        raise NotImplementedError


class ConnectorManager:
    """
    Owns the connectors to the configured MiOS units and routes traffic between them and the host.

    Configuration reloads are serialized with each other and with tick(). Commands and updates may
    arrive on any thread; each connector serializes the traffic for its unit.

    :param subscribers: the SubscriberRegistry that receives item states
    :param session_factory: called with a UnitDescriptor to create the UnitSession for the unit
    :param executor: the shared pool that runs connection attempts, polls and command delivery.
        When not given the manager creates one and shuts it down in shutdown().
    """

    def __init__(self, subscribers: SubscriberRegistry, session_factory, executor=None,
                 index: BindingIndex=None, registry: UnitRegistry=None, coercer: TypeCoercer=None,
                 clock=time.time):
        self.subscribers = subscribers
        self.index = index if index is not None else BindingIndex()
        self.registry = registry if registry is not None else UnitRegistry()
        self.fanout = PropertyFanout(self.index, subscribers, coercer)
        self.events = EventSource()
        self.configured = False
        self._session_factory = session_factory
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(thread_name_prefix='mios')
        self._clock = clock
        self._connectors = dict()        # unit name to UnitConnector
        self._connectors_lock = threading.Lock()
        self._reload_lock = threading.RLock()
        self._loop = None
        self._closed = False             # set by shutdown(), no connectors are created afterwards

    @property
    def connectors(self):
        """ a snapshot of the mapping from unit name to UnitConnector """
        with self._connectors_lock:
            return dict(self._connectors)

    @property
    def closed(self):
        return self._closed

    def _connector_events(self, event):
        """ propagates connector events to the external event handlers """
        self.events.fire(event)

    def _new_connector(self, unit) -> UnitConnector:
        session = self._session_factory(unit)
        connector = UnitConnector(unit, session, self.route, self._executor, clock=self._clock)
        connector.events.add(self._connector_events)
        logger.debug("created connector unit=%s host=%s" % (unit.name, unit.hostname))
        return connector

    def _add_connector(self, unit):
        """ creates the connector for a configured unit. Called with the connectors lock held. """
        try:
            self._connectors[unit.name] = self._new_connector(unit)
        except Exception as e:
            logger.exception("unit=%s cannot create connector: %s" % (unit.name, e))

    def _demand_connector(self, unit_name):
        """
        Retrieves the connector for the unit, creating it when the unit is configured and has
        no connector yet.
        :return: the connector, or None if the unit is not configured or the manager is shut down
        """
        with self._connectors_lock:
            if self._closed:
                return None
            connector = self._connectors.get(unit_name)
            if connector is None:
                unit = self.registry.get(unit_name)
                if unit is None:
                    return None
                connector = self._connectors[unit_name] = self._new_connector(unit)
            return connector

    def reload_configuration(self, config):
        """
        Applies a new unit configuration. Connectors of removed units are closed, connectors of
        changed units are closed and replaced, and all bound items are then watched again.
        A unit whose connector cannot be created is logged and left to be created on demand.
        :param config: the flat mapping of configuration keys to values
        :raises ConfigInvalid: when the configuration cannot be used. Nothing is changed.
        """
        units = parse_units(config)
        with self._reload_lock:
            retired = []
            try:
                with self._connectors_lock:
                    changes = self.registry.install(units)
                    retired = [self._connectors.pop(name) for name in changes.removed | changes.changed
                               if name in self._connectors]
                    if not self._closed:
                        for name in sorted(changes.added | changes.changed):
                            if name not in self._connectors:
                                self._add_connector(units[name])
            finally:
                for connector in retired:
                    logger.info("unit=%s removed or changed by configuration, closing" % connector.name)
                    connector.close()
            self.configured = True
            logger.info("configuration loaded units=%s" % sorted(units))
            self.register_all_watches()
        return changes

    def register_all_watches(self):
        for item_name in self.index.item_names():
            self.register_watch(item_name)

    def register_watch(self, item_name):
        """
        Makes sure the unit the item is bound to is connected, or on its way to being connected.
        :return: the connector for the item's unit, or None
        """
        try:
            unit_name = self.index.unit_for(item_name)
            if unit_name is None:
                logger.debug("item=%s is not bound" % item_name)
                return None
            if self._closed:
                logger.debug("item=%s unit=%s watched after shutdown, ignoring" % (item_name, unit_name))
                return None
            if not self.configured:
                logger.debug("item=%s unit=%s watched before the configuration was loaded" % (item_name, unit_name))
                return None
            connector = self._demand_connector(unit_name)
            if connector is None:
                logger.error("item=%s unit=%s does not exist in the configuration" % (item_name, unit_name))
                return None
            if connector.state is ConnectorState.IDLE:
                logger.debug("item=%s opening unit=%s host=%s" % (item_name, unit_name, connector.unit.hostname))
                connector.open()
            return connector
        except Exception as e:
            logger.exception("item=%s watch failed: %s" % (item_name, e))
            return None

    def binding_changed(self, descriptor: BindingDescriptor):
        """ notes a new or changed item binding, and watches the item """
        self.index.put(descriptor)
        return self.register_watch(descriptor.item_name)

    def binding_removed(self, item_name):
        return self.index.remove(item_name)

    def unit_name_for(self, item_name):
        return self.index.unit_for(item_name)

    def property_for(self, item_name):
        descriptor = self.index.lookup(item_name)
        return descriptor.property if descriptor else None

    def _resolve(self, item_name, what, value):
        """
        Finds the binding and connector for an outbound command or update, opening the
        connector if it has not been opened yet.
        :return: (descriptor, connector), or (descriptor, None) when the unit is not usable
        :raises UnknownUnit: when the item's unit is not configured
        :raises NotConnected: when the manager is shut down
        """
        descriptor = self.index.lookup(item_name)
        if descriptor is None:
            logger.debug("%s %s for item=%s which is not bound, ignoring" % (what, value, item_name))
            return None, None
        if not descriptor.accepts_out:
            logger.debug("%s %s for item=%s which is bound inbound only, ignoring" % (what, value, item_name))
            return descriptor, None
        if self._closed:
            raise NotConnected("the connector manager is shut down")
        connector = self._demand_connector(descriptor.unit_name)
        if connector is None:
            raise UnknownUnit("unit %s of item %s is not configured" % (descriptor.unit_name, item_name))
        if connector.state is ConnectorState.IDLE:
            connector.open()
        return descriptor, connector

    def _dispatch(self, item_name, what, command, current_state=None):
        try:
            descriptor, connector = self._resolve(item_name, what, command)
            if connector is None:
                return None
            return connector.invoke(descriptor, command, current_state)
        except UnknownUnit as e:
            logger.warning("%s %s for item=%s dropped: %s" % (what, command, item_name, e))
        except NotConnected as e:
            logger.warning("%s %s for item=%s dropped, the connection is down: %s" % (what, command, item_name, e))
        except Exception as e:
            logger.exception("%s %s for item=%s failed: %s" % (what, command, item_name, e))
        return None

    def dispatch_command(self, item_name, command):
        """
        Sends a command from the host to the unit the item is bound to. Commands for unknown
        units, or for units that are not connected, are logged and dropped.
        :return: the CommandFuture for the command, or None if it was dropped
        """
        logger.debug("command item=%s command=%s" % (item_name, command))
        return self._dispatch(item_name, 'command', command)

    def dispatch_update(self, item_name, state):
        """
        Sends a state update from the host to the unit the item is bound to, when the item
        binding accepts outbound traffic.
        :return: the CommandFuture for the update, or None if it was dropped
        """
        logger.debug("update item=%s state=%s" % (item_name, state))
        return self._dispatch(item_name, 'update', state, state)

    def route(self, unit_name, property, raw_value):
        """ called by the connectors with each update pushed by a unit """
        try:
            return self.fanout.emit(unit_name, property, raw_value)
        except Exception as e:
            logger.exception("unit=%s property=%s routing failed: %s" % (unit_name, property, e))
            return 0

    def tick(self):
        """
        Maintains the connections: polls every connector on the shared pool and waits for each
        at most its unit's timeout.
        """
        with self._reload_lock:
            started = self._clock()
            polls = [(connector, self._executor.submit(connector.poll)) for connector in self.connectors.values()]
            for connector, future in polls:
                if not connector.connected:
                    logger.debug("unit=%s is %s" % (connector.name, connector.state.value))
                limit = connector.unit.timeout_seconds or default_poll_timeout
                remaining = max(0, started + limit - self._clock())
                try:
                    future.result(remaining)
                except TimeoutError:
                    logger.warning("unit=%s poll did not finish within %ss" % (connector.name, limit))
                except Exception as e:
                    logger.exception("unit=%s poll failed: %s" % (connector.name, e))

    def start(self, refresh_interval=default_refresh_interval):
        """ starts calling tick() every refresh_interval seconds on a background thread """
        if self._loop is None:
            self._loop = PeriodicLoop(self.tick, refresh_interval, name='mios-refresh')
        self._loop.start()

    def shutdown(self, wait=True):
        """
        Stops the periodic refresh, closes every connector and waits for pending work to finish.
        The manager creates no connectors afterwards.
        """
        if self._loop is not None:
            self._loop.stop()
        with self._reload_lock:
            with self._connectors_lock:
                self._closed = True
                connectors = list(self._connectors.values())
                self._connectors.clear()
            for connector in connectors:
                connector.close()
        if self._owns_executor:
            self._executor.shutdown(wait=wait)
        logger.info("shut down, closed %d connector(s)" % len(connectors))
