import logging
import threading

from mios.binding import BindingDescriptor

logger = logging.getLogger(__name__)


class BindingIndex:
    """
    The bound items, viewed two ways: item name to BindingDescriptor, and
    (unit name, property) to the names of the items bound there.

    Both views are replaced together on each change, so readers always see a consistent
    pair without taking a lock. Writers are serialized.
    """

    def __init__(self):
        self._views = ({}, {})      # (by item, by address)
        self._lock = threading.Lock()

    def put(self, descriptor: BindingDescriptor):
        """
        Adds or replaces the binding for descriptor.item_name.
        :return: True if the index changed, False if an equal descriptor was already present
        """
        with self._lock:
            by_item, by_address = self._views
            previous = by_item.get(descriptor.item_name)
            if previous == descriptor:
                return False
            by_item = dict(by_item)
            by_address = dict(by_address)
            if previous is not None:
                self._unlink(by_address, previous)
            by_item[descriptor.item_name] = descriptor
            by_address[descriptor.address] = by_address.get(descriptor.address, frozenset()) | {descriptor.item_name}
            self._views = (by_item, by_address)
        logger.debug("bound item=%s unit=%s property=%s" %
                     (descriptor.item_name, descriptor.unit_name, descriptor.property))
        return True

    def remove(self, item_name):
        """
        Removes the binding for the item.
        :return: the removed descriptor, or None if the item was not bound
        """
        with self._lock:
            by_item, by_address = self._views
            previous = by_item.get(item_name)
            if previous is None:
                return None
            by_item = dict(by_item)
            by_address = dict(by_address)
            del by_item[item_name]
            self._unlink(by_address, previous)
            self._views = (by_item, by_address)
        logger.debug("unbound item=%s" % item_name)
        return previous

    @staticmethod
    def _unlink(by_address, descriptor):
        remaining = by_address.get(descriptor.address, frozenset()) - {descriptor.item_name}
        if remaining:
            by_address[descriptor.address] = remaining
        else:
            by_address.pop(descriptor.address, None)

    def lookup(self, item_name) -> BindingDescriptor:
        return self._views[0].get(item_name)

    def items_for(self, unit_name, property):
        """ the names of the items bound to the property on the unit, as a snapshot """
        return tuple(sorted(self._views[1].get((unit_name, property), ())))

    def unit_for(self, item_name):
        descriptor = self.lookup(item_name)
        return descriptor.unit_name if descriptor else None

    def item_names(self):
        return tuple(self._views[0])

    def descriptors(self):
        return tuple(self._views[0].values())

    def __len__(self):
        return len(self._views[0])

    def __contains__(self, item_name):
        return item_name in self._views[0]
