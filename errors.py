"""Failures a poll can report."""


class TrafficError(Exception):
    """Base class for every failure a run can report."""


class NetworkError(TrafficError):
    """Fetch or notify transport failure."""


class MissingUsageHeader(TrafficError):
    """Subscription response carries no subscription-userinfo header."""


class MalformedHeader(TrafficError):
    """A userinfo segment has no '=' separator."""


class InvalidInputDate(TrafficError, ValueError):
    """Refresh day-of-month outside [1, 31]."""


class PersistenceError(TrafficError):
    """History file could not be read, decoded or written."""
