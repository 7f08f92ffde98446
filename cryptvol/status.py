from enum import Enum


class BaseStatus(Enum):
    """
    Base class for volume statuses. A Status names the outcome of an
    operation; it is what gets logged and what the operator sees alongside
    any error text. Status values are defined in subclasses in their
    respective packages.
    """

    pass
