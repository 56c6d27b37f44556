"""


MiOS Unit Connections

- Unit: a MiOS (Vera) controller, reached by host name and port. UnitDescriptor describes it,
  UnitRegistry holds the configured units.
- Session: the transport to one unit (UnitSession). Sessions are supplied by the application
  through a session factory; this package only drives them.
- Connector: owns the session to one unit and keeps it alive (UnitConnector).
  IDLE -> CONNECTING -> CONNECTED, falling back to BROKEN when the session drops and
  reconnecting with exponential backoff when polled.
- Binding: ties a host item to a property on a unit (BindingDescriptor). BindingIndex
  answers "which items are bound to this property?" and "which unit is this item on?".
- ConnectorManager: creates connectors on demand, reconciles them with configuration
  reloads, polls them periodically, routes unit updates to items (PropertyFanout) and
  item commands to units.


## Threading

- A periodic driver thread calls ConnectorManager.tick() (see ConnectorManager.start()).
- Each session delivers unit updates from its own reader thread. Updates are routed on that
  thread, without holding any connector lock.
- A shared thread pool runs connection attempts, polls and command delivery. Each connector
  drains its command queue with at most one pool task at a time, so commands for a unit are
  delivered in the order given.

"""
