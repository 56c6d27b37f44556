"""
Item bindings: what each host item is bound to on a MiOS unit, and the transforms
applied to values crossing the boundary.

A binding is written by the user as a comma separated list of key:value pairs, for example

    unit:lounge,property:device/12/service/SwitchPower1/Status,in:MAP(switch.map),direction:in

which parse_binding() turns into a BindingDescriptor.
"""
import logging
import re
import threading
from enum import Enum

from mios.support.mixins import ValueObjectMixin

logger = logging.getLogger(__name__)

DEFAULT_UNIT = '_default'


class BindingConfigError(ValueError):
    """ The binding text for an item could not be understood. """


class UnknownTransform(BindingConfigError):
    """ A binding names a transform that is not registered. """


class ItemKind(Enum):
    """ The declared kind of a host item, which decides the state type it receives. """
    NUMBER = 'Number'
    CONTACT = 'Contact'
    SWITCH = 'Switch'
    DIMMER = 'Dimmer'
    ROLLERSHUTTER = 'Rollershutter'
    DATETIME = 'DateTime'
    STRING = 'String'


class Direction(Enum):
    IN = 'in'
    OUT = 'out'
    INOUT = 'inout'


class Transformer(ValueObjectMixin):
    """
    A named string to string function applied to values at the boundary.

    :param name: the transform as written in the binding, e.g. MAP(switch.map)
    :param fn: the function that does the work
    """
    _fields = ('name',)

    def __init__(self, name, fn):
        self.name = name
        self.fn = fn
        self._freeze()

    def apply(self, value: str) -> str:
        return self.fn(value)


class TransformRegistry:
    """
    Resolves transform names into Transformer instances.

    A transform is written as NAME or NAME(argument). A factory registered under NAME is
    called with the argument (None when absent) and returns the string to string function.
    """
    _pattern = re.compile(r'^\s*([A-Za-z_][\w-]*)\s*(?:\((.*)\))?\s*$')

    def __init__(self):
        self._factories = {}
        self._lock = threading.Lock()

    def register(self, name, factory):
        with self._lock:
            self._factories[name.upper()] = factory

    def unregister(self, name):
        with self._lock:
            self._factories.pop(name.upper(), None)

    def resolve(self, text) -> Transformer:
        match = self._pattern.match(text or '')
        if not match:
            raise BindingConfigError("malformed transform '%s'" % text)
        name, argument = match.group(1), match.group(2)
        factory = self._factories.get(name.upper())
        if factory is None:
            raise UnknownTransform("no transform named '%s'" % name)
        return Transformer(text.strip(), factory(argument))


class BindingDescriptor(ValueObjectMixin):
    """
    The binding of one host item to a property on a MiOS unit.

    Descriptors are immutable; a changed binding is represented by a new descriptor.
    """
    _fields = ('item_name', 'unit_name', 'property', 'item_kind', 'inbound_transform',
               'outbound_transform', 'direction')

    def __init__(self, item_name, unit_name, property, item_kind=ItemKind.STRING,
                 inbound_transform: Transformer=None, outbound_transform: Transformer=None,
                 direction=Direction.INOUT):
        if not item_name:
            raise BindingConfigError("an item name is required")
        if not property:
            raise BindingConfigError("item '%s' has no property" % item_name)
        self.item_name = item_name
        self.unit_name = unit_name or DEFAULT_UNIT
        self.property = property
        self.item_kind = ItemKind(item_kind)
        self.inbound_transform = inbound_transform
        self.outbound_transform = outbound_transform
        self.direction = Direction(direction)
        self._freeze()

    @property
    def accepts_in(self):
        return self.direction in (Direction.IN, Direction.INOUT)

    @property
    def accepts_out(self):
        return self.direction in (Direction.OUT, Direction.INOUT)

    @property
    def address(self):
        """ the (unit, property) pair this item is bound to """
        return self.unit_name, self.property


_binding_keys = ('unit', 'property', 'in', 'out', 'direction')


def split_binding(text):
    """
    Splits binding text into its key/value pairs.
    >>> sorted(split_binding('unit:a, property:x/y').items())
    [('property', 'x/y'), ('unit', 'a')]
    """
    values = {}
    for part in (text or '').split(','):
        part = part.strip()
        if not part:
            continue
        key, sep, value = part.partition(':')
        key, value = key.strip().lower(), value.strip()
        if not sep or not value:
            raise BindingConfigError("malformed binding entry '%s'" % part)
        if key not in _binding_keys:
            raise BindingConfigError("unknown binding key '%s'" % key)
        if key in values:
            raise BindingConfigError("binding key '%s' given more than once" % key)
        values[key] = value
    return values


def parse_binding(item_name, item_kind, text, transforms: TransformRegistry=None) -> BindingDescriptor:
    """
    Parses the binding text for an item.
    :param item_name:   the host item being bound
    :param item_kind:   the ItemKind (or its name) of the host item
    :param text:        the binding text
    :param transforms:  resolves the in: and out: transforms. Required when the text names one.
    :return: the BindingDescriptor
    """
    values = split_binding(text)

    def transform(key):
        name = values.get(key)
        if name is None:
            return None
        if transforms is None:
            raise UnknownTransform("no transforms available for '%s'" % name)
        return transforms.resolve(name)

    try:
        direction = Direction(values.get('direction', Direction.INOUT.value).lower())
    except ValueError:
        raise BindingConfigError("item '%s' has invalid direction '%s'" % (item_name, values['direction']))
    try:
        kind = ItemKind(item_kind)
    except ValueError:
        raise BindingConfigError("item '%s' has unknown kind '%s'" % (item_name, item_kind))

    descriptor = BindingDescriptor(item_name, values.get('unit'), values.get('property'), kind,
                                   transform('in'), transform('out'), direction)
    logger.debug("parsed binding item=%s unit=%s property=%s direction=%s" %
                 (item_name, descriptor.unit_name, descriptor.property, direction.value))
    return descriptor
