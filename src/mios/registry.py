import logging
import threading
from collections import namedtuple

from mios.binding import DEFAULT_UNIT
from mios.support.mixins import ValueObjectMixin

logger = logging.getLogger(__name__)


class UnitDescriptor(ValueObjectMixin):
    """
    Describes how to reach one MiOS unit.

    :param name: the unit name used in bindings. None names the default unit.
    :param hostname: the host name or address of the unit
    :param port: the port to connect to. None leaves the choice to the session.
    :param timeout: the request timeout in milliseconds. None leaves the choice to the session.
    """
    _fields = ('name', 'hostname', 'port', 'timeout')

    def __init__(self, name=None, hostname=None, port=None, timeout=None):
        self.name = name or DEFAULT_UNIT
        self.hostname = hostname
        self.port = port
        self.timeout = timeout
        self._freeze()

    @property
    def timeout_seconds(self):
        return None if self.timeout is None else self.timeout / 1000


RegistryChanges = namedtuple('RegistryChanges', ['added', 'removed', 'changed'])
RegistryChanges.__doc__ = """ The unit names added, removed and changed by UnitRegistry.install() """


class UnitRegistry:
    """
    The configured units, keyed by name. The content is replaced wholesale by install();
    readers see either the previous or the new set of units, never a mix.
    """

    def __init__(self):
        self._units = {}
        self._lock = threading.Lock()

    def install(self, units) -> RegistryChanges:
        """
        Replaces the registry content.
        :param units: an iterable of UnitDescriptor, or a mapping whose values are UnitDescriptors
        :return: the names of units added, removed and changed (address, port or timeout differ)
        """
        if hasattr(units, 'values'):
            units = units.values()
        new = {unit.name: unit for unit in units}
        with self._lock:
            old = self._units
            added = set(new) - set(old)
            removed = set(old) - set(new)
            changed = {name for name in set(new) & set(old) if new[name] != old[name]}
            self._units = new
        logger.debug("installed units added=%s removed=%s changed=%s" %
                     (sorted(added), sorted(removed), sorted(changed)))
        return RegistryChanges(added, removed, changed)

    def get(self, name):
        return self._units.get(name)

    def __contains__(self, name):
        return name in self._units

    def __len__(self):
        return len(self._units)

    def names(self):
        return set(self._units)

    @property
    def units(self):
        """ a snapshot of the mapping from unit name to UnitDescriptor """
        return dict(self._units)
