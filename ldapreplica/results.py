"""
LDAP result codes and their classification.

Executors hand raw result codes back up as :py:class:`Status` objects; the
replicator is the only thing that turns those into a decision via
:py:func:`classify`.
"""

import enum
from typing import NamedTuple

from ldapreplica import ldap

#: The LDAP result code for success
SUCCESS = 0
#: libldap's result code for "Can't contact LDAP server"
SERVER_DOWN = -1
#: The LDAP result code ``other``, used when python-ldap gives us nothing better
OTHER = 80

#: Descriptions for the result codes we talk about most
DESCRIPTIONS: dict[int, str] = {
    SUCCESS: "Success",
    SERVER_DOWN: "Can't contact LDAP server",
    1: "Operations error",
    2: "Protocol error",
    3: "Time limit exceeded",
    19: "Constraint violation",
    20: "Type or value exists",
    21: "Invalid syntax",
    32: "No such object",
    34: "Invalid DN syntax",
    49: "Invalid credentials",
    50: "Insufficient access",
    51: "Server is busy",
    52: "Server is unavailable",
    53: "Server is unwilling to perform",
    64: "Naming violation",
    65: "Object class violation",
    68: "Already exists",
    OTHER: "Other (e.g., implementation specific) error",
}


class Classification(enum.Enum):
    #: The operation succeeded.
    SUCCESS = "success"
    #: The connection went away; rebind and try the same record again.
    RETRY = "retry"
    #: Any other failure; report it and stop.
    FAIL = "fail"


class Status(NamedTuple):
    """
    The raw result of an LDAP operation.

    Args:
        code: the LDAP result code
        message: the server's or library's description of the failure, if any

    """

    code: int
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.code == SUCCESS

    @property
    def description(self) -> str:
        """Our message if we have one, otherwise a generic description of our code."""
        return self.message or describe(self.code)


def result_code(exc: Exception) -> int:
    """
    Extract the LDAP result code from a python-ldap exception.

    python-ldap puts the result code in the ``result`` key of the dict in
    ``exc.args[0]``; exceptions raised by libldap itself (like
    :py:class:`ldap.SERVER_DOWN`) may not have one.

    Args:
        exc: the exception

    Returns:
        The LDAP result code.

    """
    info = exc.args[0] if exc.args and isinstance(exc.args[0], dict) else {}
    if "result" in info:
        return int(info["result"])
    if isinstance(exc, ldap.SERVER_DOWN):  # type: ignore[attr-defined]
        return SERVER_DOWN
    return getattr(exc, "errnum", OTHER)


def error_message(exc: Exception) -> str:
    """
    Build a human readable message from a python-ldap exception.

    Args:
        exc: the exception

    Returns:
        ``desc`` and ``info`` from the exception, if present.

    """
    info = exc.args[0] if exc.args and isinstance(exc.args[0], dict) else {}
    desc = info.get("desc") or describe(result_code(exc))
    if extra := info.get("info"):
        return f"{desc}: {extra}"
    return desc


def status_from_exception(exc: Exception) -> Status:
    return Status(result_code(exc), error_message(exc))


def describe(code: int) -> str:
    """
    Return a description of the LDAP result code ``code``.
    """
    return DESCRIPTIONS.get(code, f"LDAP result code {code}")


def classify(code: int) -> Classification:
    """
    Decide what to do about the LDAP result code ``code``.

    Only a dead connection is worth retrying: the replica may have timed us
    out while we were idle.  Everything else is an application level error
    that retrying the same request won't fix.

    Args:
        code: the LDAP result code

    Returns:
        The classification of ``code``.

    """
    if code == SUCCESS:
        return Classification.SUCCESS
    if code == SERVER_DOWN:
        return Classification.RETRY
    return Classification.FAIL
