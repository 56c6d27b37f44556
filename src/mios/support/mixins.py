def quote(val):
    return "'" + str(val) + "'" if val is not None else "None"


class ValueObjectMixin:
    """
    Equality, hashing and a readable repr for immutable value objects.
    Subclasses list the attributes that make up their value in `_fields`.
    """
    _fields = ()

    def _values(self):
        return tuple(getattr(self, name) for name in self._fields)

    def __eq__(self, other):
        return isinstance(other, self.__class__) and self._values() == other._values()

    def __ne__(self, other):
        return not self.__eq__(other)

    def __hash__(self):
        return hash((self.__class__, self._values()))

    def __setattr__(self, key, value):
        if getattr(self, '_frozen', False):
            raise AttributeError("%s is immutable" % self.__class__.__name__)
        super().__setattr__(key, value)

    def _freeze(self):
        super().__setattr__('_frozen', True)

    def __repr__(self):
        return self.__class__.__name__ + "(" + ", ".join(
            "%s=%s" % (name, quote(getattr(self, name))) for name in self._fields) + ")"
