from abc import abstractmethod


class TransportFailure(IOError):
    """ The session to a unit failed to open, lost its connection, or could not deliver a request. """


class UnitSession:
    """
    The transport to one MiOS unit, as seen by a UnitConnector.

    Sessions push updates from the unit to the event sink from their own reader, and are
    otherwise driven by the connector, which never calls more than one of open(), close(),
    poll() and invoke() at a time.
    """

    @abstractmethod
    def open(self, unit):
        """
        Connects to the unit described by the UnitDescriptor.
        :raises TransportFailure: when the unit cannot be reached
        """
        raise NotImplementedError

    @abstractmethod
    def close(self):
        """ Disconnects and stops the reader. Closing a closed session does nothing. """
        raise NotImplementedError

    @abstractmethod
    def is_alive(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def poll(self):
        """
        Checks the connection is alive, or refreshes the values held by the unit.
        :raises TransportFailure: when the unit does not respond
        """
        raise NotImplementedError

    @abstractmethod
    def invoke(self, descriptor, command, current_state=None):
        """
        Sends a command for the bound item to the unit.
        :param descriptor: the BindingDescriptor of the item the command is for
        :param command: the command, as received from the host
        :param current_state: the item's current state, if known
        :raises TransportFailure: when the command cannot be delivered
        """
        raise NotImplementedError

    @abstractmethod
    def set_event_sink(self, sink):
        """
        :param sink: called as sink(property, raw_value) for each update pushed by the unit
        """
        raise NotImplementedError
