"""
Conversion of values arriving from a MiOS unit into typed item states.

MiOS reports most values as strings, so values are normalised here, once, at the boundary.
States are a small closed set of types (StateType); each State carries one value of the
python type listed below:

    DECIMAL         decimal.Decimal
    OPEN_CLOSED     'OPEN' or 'CLOSED'
    ON_OFF          'ON' or 'OFF'
    PERCENT         decimal.Decimal in 0..100
    DATETIME        timezone aware datetime.datetime
    STRING          str
"""
import datetime
import logging
import re
from decimal import Decimal, InvalidOperation
from enum import Enum

from mios.binding import ItemKind
from mios.support.mixins import ValueObjectMixin

logger = logging.getLogger(__name__)


class UnsupportedValueKind(TypeError):
    """ A native value has a type that cannot be turned into a state. """


class StateType(Enum):
    DECIMAL = 'Decimal'
    OPEN_CLOSED = 'OpenClosed'
    ON_OFF = 'OnOff'
    PERCENT = 'Percent'
    DATETIME = 'DateTime'
    STRING = 'String'


class State(ValueObjectMixin):
    """ A typed item state. """
    _fields = ('type', 'value')

    def __init__(self, type: StateType, value):
        self.type = type
        self.value = value
        self._freeze()

    def __str__(self):
        """ the string form, as handed to transforms """
        if self.type is StateType.DATETIME:
            return self.value.isoformat()
        if self.type in (StateType.DECIMAL, StateType.PERCENT):
            return _format_decimal(self.value)
        return str(self.value)

    def render(self):
        """
        The native python value of this state, in the form from_native() accepts.
        States with no native counterpart (open/closed, percent) render as their string form.
        """
        if self.type is StateType.ON_OFF:
            return self.value == ON
        if self.type in (StateType.DECIMAL, StateType.DATETIME, StateType.STRING):
            return self.value
        return str(self)


ON, OFF = 'ON', 'OFF'
OPEN, CLOSED = 'OPEN', 'CLOSED'


def decimal_state(value):
    return State(StateType.DECIMAL, Decimal(value))


def string_state(value):
    return State(StateType.STRING, value)


def _format_decimal(value: Decimal):
    """
    >>> _format_decimal(Decimal('22.50'))
    '22.5'
    >>> _format_decimal(Decimal('1E+2'))
    '100'
    """
    return format(value.normalize(), "f")


class ParseResult:
    """ The outcome of parsing a string: either a state or the reason it could not be parsed. """

    def __init__(self, state: State=None, error=None):
        self.state = state
        self.error = error

    @property
    def ok(self):
        return self.error is None


def _parse_decimal(s):
    try:
        value = Decimal(s.strip())
    except InvalidOperation:
        return ParseResult(error="'%s' is not a number" % s)
    if not value.is_finite():
        return ParseResult(error="'%s' is not a finite number" % s)
    return ParseResult(State(StateType.DECIMAL, value))


def _parse_choice(state_type, choices):
    def parse(s):
        value = s.strip().upper()
        if value not in choices:
            return ParseResult(error="'%s' is not one of %s" % (s, ', '.join(choices)))
        return ParseResult(State(state_type, value))
    return parse


def _parse_percent(s):
    result = _parse_decimal(s)
    if not result.ok:
        return result
    value = min(max(result.state.value, Decimal(0)), Decimal(100))
    return ParseResult(State(StateType.PERCENT, value))


_epoch = re.compile(r'^[+-]?\d+(\.\d+)?$')


def _as_utc(value: datetime.datetime):
    return value.replace(tzinfo=datetime.timezone.utc) if value.tzinfo is None else value


def _parse_datetime(s):
    text = s.strip()
    try:
        if _epoch.match(text):
            return ParseResult(datetime_state(
                datetime.datetime.fromtimestamp(float(text), datetime.timezone.utc)))
        if text.endswith(('Z', 'z')):
            text = text[:-1] + '+00:00'
        return ParseResult(datetime_state(datetime.datetime.fromisoformat(text)))
    except (ValueError, OverflowError, OSError):
        return ParseResult(error="'%s' is not an ISO-8601 date/time or epoch seconds" % s)


def datetime_state(value):
    if not isinstance(value, datetime.datetime):
        value = datetime.datetime(value.year, value.month, value.day)
    return State(StateType.DATETIME, _as_utc(value))


_parsers = {
    ItemKind.NUMBER: _parse_decimal,
    ItemKind.CONTACT: _parse_choice(StateType.OPEN_CLOSED, (OPEN, CLOSED)),
    ItemKind.SWITCH: _parse_choice(StateType.ON_OFF, (ON, OFF)),
    ItemKind.DIMMER: _parse_percent,
    ItemKind.ROLLERSHUTTER: _parse_percent,
    ItemKind.DATETIME: _parse_datetime,
    ItemKind.STRING: lambda s: ParseResult(string_state(s)),
}


class TypeCoercer:
    """
    Converts strings and native values into states.
    """

    def __init__(self, log=logger):
        self.logger = log

    def parse(self, kind: ItemKind, s: str) -> ParseResult:
        """ parses s into the canonical state for kind, without any fallback """
        return _parsers[ItemKind(kind)](s)

    def from_string(self, kind: ItemKind, s: str) -> State:
        """
        Parses s into the canonical state for kind. When s cannot be parsed a warning is logged
        and a String state carrying s is returned.
        """
        kind = ItemKind(kind)
        result = self.parse(kind, s)
        if result.ok:
            self.logger.debug("converted '%s' to %s for kind=%s" % (s, result.state.type.value, kind.value))
            return result.state
        self.logger.warning("cannot convert value for kind=%s, keeping string: %s" % (kind.value, result.error))
        return string_state(s)

    def from_native(self, value) -> State:
        """
        Converts a value of a native python type into a state:
            str                         String
            bool                        OnOff
            int, float, Decimal         Decimal
            datetime, date              DateTime (UTC when no zone is given)
        :raises UnsupportedValueKind: for any other type
        """
        for types, convert in _native_converters:
            if isinstance(value, types):
                return convert(value)
        raise UnsupportedValueKind("cannot convert value of type %s" % type(value).__name__)


def _from_decimal(value):
    if not value.is_finite():
        raise UnsupportedValueKind("cannot convert non-finite number %s" % value)
    return State(StateType.DECIMAL, value)


def _from_float(value):
    if value != value or value in (float('inf'), float('-inf')):
        raise UnsupportedValueKind("cannot convert non-finite number %s" % value)
    return decimal_state(repr(value))


# bool before int, since bool is an int. datetime before date, likewise.
_native_converters = (
    (str, string_state),
    (bool, lambda v: State(StateType.ON_OFF, ON if v else OFF)),
    (int, decimal_state),
    (float, _from_float),
    (Decimal, _from_decimal),
    (datetime.datetime, datetime_state),
    (datetime.date, datetime_state),
)
