import threading
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from unittest import TestCase
from unittest.mock import Mock

import timeout_decorator
from hamcrest import assert_that, is_, none, not_none, has_length, calling, raises, is_not, instance_of, \
    contains_exactly, empty, less_than

from mios.binding import BindingDescriptor, Direction, ItemKind, TransformRegistry, parse_binding
from mios.coercion import State, StateType
from mios.config.config import ConfigInvalid
from mios.connector import ConnectorState, ConnectorStateChanged
from mios.connector_test import FakeSession, ManualExecutor, SyncExecutor
from mios.manager import ConnectorManager
from mios.registry import UnitDescriptor
from mios.support.loop_test import debug_timeout


class ConnectorManagerTest(TestCase):
    def setUp(self):
        self.now = 100.0
        self.sessions = {}
        self.subscribers = Mock()
        self.executor = SyncExecutor()
        self.sut = self.create()

    def create(self, executor=None):
        return ConnectorManager(self.subscribers, self.session_factory, executor or self.executor,
                                clock=lambda: self.now)

    def session_factory(self, unit):
        session = FakeSession()
        self.sessions.setdefault(unit.name, []).append(session)
        return session

    def session(self, unit_name):
        """ the most recent session created for the unit """
        return self.sessions[unit_name][-1]

    def bind(self, item_name, unit_name='_default', property='temp', kind=ItemKind.NUMBER, **kwargs):
        return self.sut.binding_changed(BindingDescriptor(item_name, unit_name, property, kind, **kwargs))

    def test_default_unit_config(self):
        self.sut.reload_configuration({'host': '10.0.0.5', 'port': '3480', 'timeout': '5000'})
        assert_that(self.sut.registry.units, is_({'_default': UnitDescriptor('_default', '10.0.0.5', 3480, 5000)}))
        assert_that(self.sut.configured, is_(True))

        connector = self.bind('hallLight', property='device/1/status', kind=ItemKind.SWITCH)
        assert_that(connector, is_(not_none()))
        assert_that(self.session('_default').opened, contains_exactly(UnitDescriptor(None, '10.0.0.5', 3480, 5000)))
        assert_that(connector.state, is_(ConnectorState.CONNECTED))

    def test_multi_unit_config(self):
        self.sut.reload_configuration({'lounge.host': 'h1', 'lounge.port': '3480', 'kitchen.host': 'h2'})
        kitchen = self.sut.registry.get('kitchen')
        assert_that(kitchen.port, is_(none()))
        assert_that(kitchen.timeout, is_(none()))
        self.bind('loungeTemp', 'lounge')
        self.bind('kitchenTemp', 'kitchen')
        connectors = self.sut.connectors
        assert_that(sorted(connectors), is_(['kitchen', 'lounge']))
        for connector in connectors.values():
            assert_that(connector.state, is_(ConnectorState.CONNECTED))

    def test_watch_before_configuration_does_nothing(self):
        assert_that(self.bind('hallLight'), is_(none()))
        assert_that(self.sessions, is_(empty()))

        self.sut.reload_configuration({'host': 'h'})
        assert_that(self.sut.connectors['_default'].state, is_(ConnectorState.CONNECTED))

    def test_watch_unknown_unit(self):
        self.sut.reload_configuration({'host': 'h'})
        with self.assertLogs('mios.manager', 'ERROR'):
            assert_that(self.bind('a', 'attic'), is_(none()))
        assert_that('attic' in self.sut.connectors, is_(False))

    def test_inbound_update(self):
        self.sut.reload_configuration({'host': 'h'})
        self.bind('livingTemp')
        self.session('_default').push('temp', 22)
        self.subscribers.emit.assert_called_once_with('livingTemp', State(StateType.DECIMAL, Decimal(22)))

    def test_inbound_update_with_transform(self):
        transforms = TransformRegistry()
        transforms.register('divide100', lambda arg: lambda s: str(Decimal(s) / 100))
        self.sut.reload_configuration({'host': 'h'})
        self.sut.binding_changed(parse_binding('livingTemp', 'Number', 'property:temp,in:divide100', transforms))
        self.session('_default').push('temp', '2250')
        self.subscribers.emit.assert_called_once_with('livingTemp', State(StateType.DECIMAL, Decimal('22.5')))

    def test_route_unbound_property(self):
        assert_that(self.sut.route('_default', 'nothing', 1), is_(0))

    def test_route_isolates_subscriber_failures(self):
        self.sut.reload_configuration({'host': 'h'})
        self.bind('livingTemp')
        self.subscribers.emit.side_effect = RuntimeError("host failed")
        assert_that(self.sut.route('_default', 'temp', 1), is_(0))

    def test_reconnect(self):
        self.sut.reload_configuration({'host': 'h'})
        connector = self.bind('hallLight', property='status', kind=ItemKind.SWITCH)
        session = self.session('_default')

        session.alive = False
        self.now = 101.0
        self.sut.tick()
        assert_that(connector.state, is_(ConnectorState.BROKEN))
        with self.assertLogs('mios.manager', 'WARNING'):
            assert_that(self.sut.dispatch_command('hallLight', 'ON'), is_(none()))

        session.alive = True
        self.now = 102.0
        self.sut.tick()
        assert_that(connector.state, is_(ConnectorState.CONNECTED))
        assert_that(session.opened, has_length(2))
        assert_that(self.sut.dispatch_command('hallLight', 'ON').result(0), is_(True))
        assert_that(session.invoked, is_([('hallLight', 'ON')]))

    def test_reload_removes_unit(self):
        self.sut.reload_configuration({'a.host': 'h1', 'b.host': 'h2'})
        self.bind('itemA', 'a')
        old = self.bind('itemB', 'b')

        self.sut.reload_configuration({'a.host': 'h1'})
        assert_that(self.sut.registry.names(), is_({'a'}))
        assert_that(old.state, is_(ConnectorState.CLOSED))
        assert_that(self.session('b').closed, is_(1))
        assert_that(sorted(self.sut.connectors), is_(['a']))
        with self.assertLogs('mios.manager', 'WARNING') as logs:
            assert_that(self.sut.dispatch_command('itemB', 'ON'), is_(none()))
        assert_that('unit b of item itemB is not configured' in logs.output[0], is_(True))

    def test_reload_timeout_change_replaces_connector(self):
        self.sut.reload_configuration({'host': 'h', 'timeout': '5000'})
        old = self.bind('livingTemp')
        old_session = self.session('_default')

        changes = self.sut.reload_configuration({'host': 'h', 'timeout': '9000'})
        assert_that(changes.changed, is_({'_default'}))
        new = self.sut.connectors['_default']
        assert_that(new, is_not(old))
        assert_that(old.state, is_(ConnectorState.CLOSED))
        assert_that(old_session.closed, is_(1))
        assert_that(new.state, is_(ConnectorState.CONNECTED))
        assert_that(self.session('_default').opened, contains_exactly(UnitDescriptor(None, 'h', None, 9000)))

    def test_reload_unchanged_keeps_connector(self):
        self.sut.reload_configuration({'host': 'h'})
        connector = self.bind('livingTemp')
        self.sut.reload_configuration({'host': 'h'})
        assert_that(self.sut.connectors['_default'], is_(connector))
        assert_that(self.sessions['_default'], has_length(1))

    def test_reload_invalid_config_changes_nothing(self):
        self.sut.reload_configuration({'host': 'h'})
        assert_that(calling(self.sut.reload_configuration).with_args({'host': 'h', 'port': 'x'}),
                    raises(ConfigInvalid))
        assert_that(self.sut.registry.units, is_({'_default': UnitDescriptor(None, 'h')}))

    def test_connectors_only_for_configured_units(self):
        self.sut.reload_configuration({'a.host': 'h1', 'b.host': 'h2'})
        self.sut.reload_configuration({'b.host': 'h3', 'c.host': 'h4'})
        assert_that(set(self.sut.connectors) <= self.sut.registry.names(), is_(True))

    def test_command_while_connecting_is_dropped(self):
        executor = ManualExecutor()
        self.sut = self.create(executor)
        self.sut.reload_configuration({'host': 'h'})
        connector = self.bind('hallLight', property='status', kind=ItemKind.SWITCH)
        assert_that(connector.state, is_(ConnectorState.CONNECTING))
        with self.assertLogs('mios.manager', 'WARNING') as logs:
            assert_that(self.sut.dispatch_command('hallLight', 'ON'), is_(none()))
        assert_that('connection is down' in logs.output[0], is_(True))

    def test_command_for_unbound_item(self):
        self.sut.reload_configuration({'host': 'h'})
        assert_that(self.sut.dispatch_command('nothing', 'ON'), is_(none()))

    def test_command_for_inbound_only_item(self):
        self.sut.reload_configuration({'host': 'h'})
        self.bind('sensor', direction=Direction.IN)
        assert_that(self.sut.dispatch_command('sensor', 'ON'), is_(none()))
        assert_that(self.session('_default').invoked, is_(empty()))

    def test_update_is_sent_with_state(self):
        self.sut.reload_configuration({'host': 'h'})
        self.bind('setpoint')
        state = State(StateType.DECIMAL, Decimal(21))
        session = self.session('_default')
        session.invoke = Mock()
        future = self.sut.dispatch_update('setpoint', state)
        assert_that(future.result(0), is_(True))
        session.invoke.assert_called_once_with(self.sut.index.lookup('setpoint'), state, state)

    def test_lookups(self):
        self.bind('livingTemp', 'lounge', 'device/3/temp')
        assert_that(self.sut.unit_name_for('livingTemp'), is_('lounge'))
        assert_that(self.sut.property_for('livingTemp'), is_('device/3/temp'))
        assert_that(self.sut.property_for('other'), is_(none()))

    def test_binding_removed(self):
        self.sut.reload_configuration({'host': 'h'})
        self.bind('livingTemp')
        self.sut.binding_removed('livingTemp')
        self.session('_default').push('temp', 22)
        self.subscribers.emit.assert_not_called()

    def test_connector_events_are_relayed(self):
        listener = Mock()
        self.sut.events += listener
        self.sut.reload_configuration({'host': 'h'})
        self.bind('livingTemp')
        events = [args[0] for args, _ in listener.call_args_list]
        assert_that(events, has_length(2))
        assert_that(events[-1], is_(instance_of(ConnectorStateChanged)))
        assert_that(events[-1].new_state, is_(ConnectorState.CONNECTED))

    def test_shutdown_closes_connectors(self):
        self.sut.reload_configuration({'a.host': 'h1', 'b.host': 'h2'})
        a = self.bind('itemA', 'a')
        self.sut.shutdown()
        assert_that(a.state, is_(ConnectorState.CLOSED))
        assert_that(self.sut.connectors, is_(empty()))
        assert_that(self.session('a').closed, is_(1))

    def test_shutdown_stops_creating_connectors(self):
        self.sut.reload_configuration({'a.host': 'h1'})
        self.sut.shutdown()
        assert_that(self.bind('late', 'a'), is_(none()))
        assert_that(self.sut.dispatch_command('late', 'ON'), is_(none()))
        assert_that(self.sut.connectors, is_(empty()))
        assert_that(self.sessions['a'], has_length(1))
        assert_that(self.sut.closed, is_(True))

    def test_reload_survives_session_factory_failure(self):
        self.sut.reload_configuration({'a.host': 'h1', 'b.host': 'h2'})
        b = self.bind('itemB', 'b')
        assert_that(b.state, is_(ConnectorState.CONNECTED))

        def failing_factory(unit):
            if unit.name == 'c':
                raise OSError("cannot create session")
            return self.session_factory(unit)

        self.sut._session_factory = failing_factory
        with self.assertLogs('mios.manager', 'ERROR'):
            self.sut.reload_configuration({'a.host': 'h1', 'c.host': 'h3'})
        assert_that(b.state, is_(ConnectorState.CLOSED))
        assert_that(self.session('b').closed, is_(1))
        assert_that(self.sut.registry.names(), is_({'a', 'c'}))
        assert_that(set(self.sut.connectors), is_({'a'}))

    def test_command_opens_idle_connector(self):
        self.sut.reload_configuration({'host': 'h'})
        # bound without a watch, so no connector has been opened
        self.sut.index.put(BindingDescriptor('hallLight', '_default', 'status', ItemKind.SWITCH))
        future = self.sut.dispatch_command('hallLight', 'ON')
        assert_that(future.result(0), is_(True))
        assert_that(self.sut.connectors['_default'].state, is_(ConnectorState.CONNECTED))
        assert_that(self.session('_default').invoked, is_([('hallLight', 'ON')]))

    def test_tick_isolates_poll_failures(self):
        self.sut.reload_configuration({'a.host': 'h1', 'b.host': 'h2'})
        self.bind('itemA', 'a')
        self.bind('itemB', 'b')
        self.sut.connectors['a'].poll = Mock(side_effect=RuntimeError("bug"))
        with self.assertLogs('mios.manager', 'ERROR'):
            self.sut.tick()
        assert_that(self.session('b').polls, is_(1))


class ConnectorManagerThreadedTest(TestCase):
    """ runs the manager on a real thread pool """

    def setUp(self):
        self.subscribers = Mock()
        self.sessions = []
        self.sut = ConnectorManager(self.subscribers, self.session_factory, ThreadPoolExecutor(4))

    def tearDown(self):
        self.sut.shutdown()

    def session_factory(self, unit):
        session = FakeSession()
        self.sessions.append(session)
        return session

    def wait_for(self, predicate, timeout=2):
        deadline = time.time() + timeout
        while not predicate():
            if time.time() > deadline:
                raise AssertionError("condition not met")
            time.sleep(0.01)

    @timeout_decorator.timeout(debug_timeout(10))
    def test_tick_bounds_wait_for_stalled_unit(self):
        self.sut.reload_configuration({'slow.host': 'h1', 'slow.timeout': '100', 'fast.host': 'h2'})
        slow = self.sut.binding_changed(BindingDescriptor('slowItem', 'slow', 'p'))
        fast = self.sut.binding_changed(BindingDescriptor('fastItem', 'fast', 'p'))
        self.wait_for(lambda: slow.connected and fast.connected)

        release = threading.Event()
        slow.session.poll = lambda: release.wait(5)
        try:
            started = time.time()
            with self.assertLogs('mios.manager', 'WARNING') as logs:
                self.sut.tick()
            assert_that(time.time() - started, is_(less_than(2)))
            assert_that('unit=slow poll did not finish' in logs.output[0], is_(True))
            assert_that(fast.session.polls, is_(1))
        finally:
            release.set()

    @timeout_decorator.timeout(debug_timeout(10))
    def test_commands_are_delivered_in_order(self):
        self.sut.reload_configuration({'host': 'h'})
        connector = self.sut.binding_changed(BindingDescriptor('light', None, 'status', ItemKind.SWITCH))
        self.wait_for(lambda: connector.connected)
        futures = [self.sut.dispatch_command('light', i) for i in range(50)]
        for future in futures:
            future.result(2)
        assert_that([command for _, command in self.sessions[0].invoked], is_(list(range(50))))

    @timeout_decorator.timeout(debug_timeout(10))
    def test_start_runs_tick_periodically(self):
        self.sut.reload_configuration({'host': 'h'})
        connector = self.sut.binding_changed(BindingDescriptor('light', None, 'status', ItemKind.SWITCH))
        self.wait_for(lambda: connector.connected)
        self.sut.start(refresh_interval=0.01)
        self.wait_for(lambda: self.sessions[0].polls >= 2)
