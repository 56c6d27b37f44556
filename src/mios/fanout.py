import logging

from mios.coercion import StateType, TypeCoercer, UnsupportedValueKind
from mios.binding import ItemKind
from mios.index import BindingIndex

logger = logging.getLogger(__name__)


class PropertyFanout:
    """
    Pushes a value reported for a property on a unit to every item bound to that property.

    For each item the value is converted into a state, passed through the item's inbound
    transform if it has one, and converted to the item's kind when it is still a string.
    A failure for one item is logged and does not affect the others.

    :param index: the BindingIndex used to find the items
    :param subscribers: receives emit(item_name, state) for each item
    :param coercer: converts values into states
    """

    def __init__(self, index: BindingIndex, subscribers, coercer: TypeCoercer=None, log=logger):
        self.index = index
        self.subscribers = subscribers
        self.coercer = coercer or TypeCoercer()
        self.logger = log

    def emit(self, unit_name, property, raw_value):
        """
        :return: the number of items the value was emitted to
        """
        if raw_value is None:
            self.logger.debug("unit=%s property=%s value is None, ignored" % (unit_name, property))
            return 0
        bound = 0
        for item_name in self.index.items_for(unit_name, property):
            try:
                if self._emit_item(item_name, unit_name, property, raw_value):
                    bound += 1
            except Exception as e:
                self.logger.exception("unit=%s property=%s item=%s update failed: %s" %
                                      (unit_name, property, item_name, e))
        if bound:
            self.logger.debug("unit=%s property=%s value=%r bound=%d" % (unit_name, property, raw_value, bound))
        else:
            self.logger.debug("unit=%s property=%s value=%r bound=0 (not bound)" % (unit_name, property, raw_value))
        return bound

    def _emit_item(self, item_name, unit_name, property, raw_value):
        descriptor = self.index.lookup(item_name)
        if descriptor is None or (descriptor.unit_name, descriptor.property) != (unit_name, property):
            # unbound since the snapshot was taken
            return False
        if not descriptor.accepts_in:
            return False
        try:
            state = self.coercer.from_native(raw_value)
        except UnsupportedValueKind as e:
            self.logger.warning("unit=%s property=%s item=%s value dropped: %s" % (unit_name, property, item_name, e))
            return False

        kind = descriptor.item_kind
        if descriptor.inbound_transform is not None:
            transformed = descriptor.inbound_transform.apply(str(state))
            self.logger.debug("item=%s transform %s: '%s' -> '%s'" %
                              (item_name, descriptor.inbound_transform.name, state, transformed))
            state = self.coercer.from_string(kind, transformed)

        if state.type is StateType.STRING and kind is not ItemKind.STRING:
            state = self.coercer.from_string(kind, state.value)

        self.logger.debug("item=%s update to %s" % (item_name, state))
        self.subscribers.emit(item_name, state)
        return True
