"""
Configuration of the MiOS units.

The host supplies a flat mapping of keys to strings. A key is either a parameter name,
which configures the default unit, or a unit name and parameter joined with a period:

    host = 10.0.0.5             # the default unit
    lounge.host = 10.0.0.6
    lounge.port = 3480
    lounge.timeout = 5000

The same settings can be kept in a configobj file, where named units are sections:

    host = 10.0.0.5
    [lounge]
    host = 10.0.0.6
    port = 3480
"""
import logging
import os

from configobj import ConfigObj, ConfigObjError, flatten_errors
from validate import Validator

from mios.binding import DEFAULT_UNIT
from mios.registry import UnitDescriptor

logger = logging.getLogger(__name__)

ignored_keys = ('service.pid',)

unit_params = ('host', 'port', 'timeout')

# the schema applied to configuration files. Named units are sections.
_unit_schema = [
    'host = string(default=None)',
    'port = integer(min=0, max=65535, default=None)',
    'timeout = integer(min=1, default=None)',
]
config_schema = _unit_schema + ['[__many__]'] + _unit_schema


class ConfigInvalid(ValueError):
    """ The configuration cannot be used. """


def split_key(key):
    """
    Splits a configuration key into the unit name and the parameter.
    >>> split_key('host')
    ('_default', 'host')
    >>> split_key('lounge.port')
    ('lounge', 'port')
    """
    unit_name, sep, param = key.partition('.')
    if not sep:
        return DEFAULT_UNIT, key
    if not unit_name or not param:
        raise ConfigInvalid("malformed configuration key '%s'" % key)
    if '.' in param:
        raise ConfigInvalid("configuration key '%s' has too many parts" % key)
    return unit_name, param


def _integer(key, value, low, high=None):
    try:
        result = int(value)
    except (TypeError, ValueError):
        raise ConfigInvalid("'%s' must be an integer, not '%s'" % (key, value))
    if result < low or (high is not None and result > high):
        raise ConfigInvalid("'%s' is out of range: %s" % (key, value))
    return result


_converters = {
    'host': lambda key, value: value,
    'port': lambda key, value: _integer(key, value, 0, 65535),
    'timeout': lambda key, value: _integer(key, value, 1),
}


def parse_units(config) -> dict:
    """
    Builds the unit descriptors from the flat configuration mapping.

    A unit is only kept when at least one of its parameters is recognised: unknown parameters
    are logged and ignored, and a unit seen only through unknown parameters is dropped.
    :param config: mapping of configuration keys to string values
    :return: dict of unit name to UnitDescriptor
    :raises ConfigInvalid: for malformed keys and values that are not valid for their parameter
    """
    params = {}
    for key, value in (config or {}).items():
        if key in ignored_keys:
            continue
        unit_name, param = split_key(key)
        if param not in _converters:
            logger.warning("unexpected configuration parameter '%s' for unit=%s" % (param, unit_name))
            continue
        value = '' if value is None else str(value).strip()
        params.setdefault(unit_name, {})[param] = _converters[param](key, value)

    units = {}
    for unit_name, values in params.items():
        units[unit_name] = UnitDescriptor(unit_name, values.get('host'), values.get('port'), values.get('timeout'))
        logger.debug("configured unit=%s host=%s port=%s timeout=%s" %
                     (unit_name, values.get('host'), values.get('port'), values.get('timeout')))
    return units


def load_config_file(file, must_exist=True) -> dict:
    """
    Loads unit configuration from a configobj file and flattens it into the mapping accepted by
    parse_units().
    :param file:        The configuration file to load
    :param must_exist:  when True, the file must exist or ConfigInvalid is raised.
    :return: dict of configuration key to string value
    """
    if not must_exist and not os.path.exists(file):
        return {}
    try:
        config = ConfigObj(file, configspec=config_schema, file_error=True)
    except (ConfigObjError, IOError) as e:
        raise ConfigInvalid(str(e) + ' at ' + file) from e

    result = config.validate(Validator(), preserve_errors=True)
    if result is not True:
        problems = ["%s: %s" % ('.'.join(sections + [key or '']), error or 'missing')
                    for sections, key, error in flatten_errors(config, result)]
        raise ConfigInvalid("the config file %s failed validation: %s" % (file, '; '.join(problems)))
    return flatten(config)


def flatten(config) -> dict:
    """
    Flattens the top level scalars and one level of sections into dotted keys. Values
    are converted to strings; absent values are left out.
    >>> sorted(flatten({'host': 'h', 'port': None, 'lounge': {'port': 3480}}).items())
    [('host', 'h'), ('lounge.port', '3480')]
    """
    flat = {}
    for key, value in config.items():
        if isinstance(value, dict):
            for param, param_value in value.items():
                if isinstance(param_value, dict):
                    raise ConfigInvalid("section '%s.%s' is nested too deeply" % (key, param))
                if param_value is not None:
                    flat[key + '.' + param] = str(param_value)
        elif value is not None:
            flat[key] = str(value)
    return flat
