"""
Exceptions raised while replicating a change record to a replica.

There are three families:

* :py:class:`BindError` and subclasses: we could not get an authenticated
  connection to the replica.  These are never the fault of the change record,
  so :py:class:`~ldapreplica.replicator.Replicator` reports them as retryable.
* :py:class:`ModificationError` and subclasses: the change record is
  malformed.  Retrying would not help, so these are fatal.
* :py:class:`UnknownChangeTypeError`: the change record has a changetype we
  don't know how to replicate.  Also fatal.
"""

import enum


class BindResult(enum.Enum):
    """
    The result of trying to bind a :py:class:`~ldapreplica.session.ReplicaSession`.
    """

    #: We have an authenticated connection.
    OK = "ok"
    #: We were not given a session to bind.
    BAD_SESSION = "bad-session"
    #: We could not open a connection to the replica.
    OPEN = "open"
    #: The strong (ticket-based) bind failed or is not supported.
    STRONG_FAILED = "strong-failed"
    #: The simple bind failed.
    SIMPLE_FAILED = "simple-failed"
    #: The replica is configured with a bind method we don't know.
    BAD_METHOD = "bad-method"


class ReplicationError(Exception):
    """Base exception for ldapreplica errors."""


# -----------------------
# Bind errors
# -----------------------


class BindError(ReplicationError):
    """
    We failed to bind to a replica.

    Args:
        message: a human readable description of the failure

    Keyword Args:
        status: the LDAP result code returned by the server, if there was one

    """

    #: The :py:class:`BindResult` this error represents
    result: BindResult = BindResult.OPEN

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


class BadSessionError(BindError):
    result = BindResult.BAD_SESSION


class ConnectionOpenError(BindError):
    result = BindResult.OPEN


class StrongBindError(BindError):
    result = BindResult.STRONG_FAILED


class UnsupportedBindMethodError(StrongBindError):
    """
    Strong authentication was requested, but this installation can't do it:
    either python-ldap was built without SASL, or ``gssapi`` is not installed.
    """


class SimpleBindError(BindError):
    result = BindResult.SIMPLE_FAILED


class UnknownBindMethodError(BindError):
    result = BindResult.BAD_METHOD


class TicketError(ReplicationError):
    """We could not acquire a ticket for a principal."""


# -----------------------
# Change record errors
# -----------------------


class ModificationError(ReplicationError):
    """
    The modification items of a change record can't be turned into an LDAP
    request.  The string value of the exception is suitable for operator logs.
    """

    #: The default message for this error
    default_message: str = "Bad value in replication log entry"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NoModificationsError(ModificationError):
    default_message = "No modifications to do"


class NoArgumentsError(ModificationError):
    default_message = "No arguments given"


class BadValueError(ModificationError):
    default_message = "Bad value in replication log entry"


class IncorrectArgumentError(ModificationError):
    default_message = "Incorrect argument to deleteoldrdn"


class MissingArgumentError(ModificationError):
    default_message = 'Missing argument: requires "newrdn" and "deleteoldrdn"'


class UnknownChangeTypeError(ReplicationError):
    """The change record's changetype is not one we can replicate."""
