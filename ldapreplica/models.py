"""
Data objects passed into and out of the replicator.

A :py:class:`ChangeRecord` is produced by whatever reads the replication log.
We only ever read it.  An :py:class:`Outcome` is what we hand back to the
caller so that it can decide whether to move on, retry later or give up on
the record.
"""

import enum
from dataclasses import dataclass, field
from typing import Any

from ldapreplica import ldap

# -----------------------
# Reserved item types
# -----------------------

#: Ends the current group of a modify change record
MOD_SEPARATOR = "-"
#: Opens an ``add`` group in a modify change record
MOD_OP_ADD = "add"
#: Opens a ``replace`` group in a modify change record
MOD_OP_REPLACE = "replace"
#: Opens a ``delete`` group in a modify change record
MOD_OP_DELETE = "delete"
#: The new RDN of a modrdn change record
NEWRDN = "newrdn"
#: The delete-old-RDN flag of a modrdn change record
DELETEOLDRDN = "deleteoldrdn"

#: Map of modify operator tokens to python-ldap modification types
MOD_OPERATORS: dict[str, int] = {
    MOD_OP_ADD: ldap.MOD_ADD,  # type: ignore[attr-defined]
    MOD_OP_REPLACE: ldap.MOD_REPLACE,  # type: ignore[attr-defined]
    MOD_OP_DELETE: ldap.MOD_DELETE,  # type: ignore[attr-defined]
}


#: Other names seen in replication logs for our change types
CHANGETYPE_ALIASES: dict[str, str] = {"rename": "modrdn", "moddn": "modrdn"}


class ChangeType(enum.Enum):
    """
    The kinds of change we know how to replicate.  The values are the
    ``changetype:`` tags used in the replication log.
    """

    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"
    MODRDN = "modrdn"

    @classmethod
    def parse(cls, tag: "str | ChangeType") -> "ChangeType | str":
        """
        Turn a raw changetype tag into a :py:class:`ChangeType`.

        Unknown tags are returned unchanged so that the replicator can report
        them.

        Args:
            tag: the raw tag from the replication log

        Returns:
            A :py:class:`ChangeType`, or ``tag`` if we don't recognize it.

        """
        if isinstance(tag, cls):
            return tag
        value = str(tag).strip().lower()
        try:
            return cls(CHANGETYPE_ALIASES.get(value, value))
        except ValueError:
            return tag


@dataclass(frozen=True)
class ModificationItem:
    """
    One ``type: value`` line of a change record.

    ``type`` is either an attribute name or one of the reserved item types
    above.  Values are raw bytes and may contain NUL bytes.  If ``length`` is
    given, the value is cut to that many bytes.

    Args:
        type: the attribute name or reserved item type
        value: the value

    Keyword Args:
        length: the authoritative length of ``value``

    """

    type: str
    value: bytes | str = b""
    length: int | None = None

    def __post_init__(self) -> None:
        value = self.value
        if isinstance(value, str):
            value = value.encode("utf-8")
        if self.length is not None:
            value = value[: self.length]
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "length", len(value))

    @property
    def text(self) -> str:
        """Our value decoded as UTF-8."""
        return self.value.decode("utf-8")


@dataclass(frozen=True)
class ChangeRecord:
    """
    A single pending change to replicate.

    Args:
        dn: the DN of the entry being changed
        changetype: what kind of change this is.  Strings are parsed with
            :py:meth:`ChangeType.parse`.

    Keyword Args:
        mods: the modification items, in log order

    """

    dn: str
    changetype: ChangeType | str
    mods: tuple[ModificationItem, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        object.__setattr__(self, "changetype", ChangeType.parse(self.changetype))
        object.__setattr__(self, "mods", tuple(self.mods))

    @classmethod
    def from_pairs(
        cls,
        dn: str,
        changetype: ChangeType | str,
        pairs: list[tuple[str, Any]],
    ) -> "ChangeRecord":
        """
        Build a change record from ``(type, value)`` pairs.

        Example:
            >>> ChangeRecord.from_pairs(
                "uid=foo,ou=people,dc=example,dc=com",
                "modify",
                [("replace", "cn"), ("cn", "Foo Bar"), ("-", "")],
            )

        Args:
            dn: the DN of the entry being changed
            changetype: what kind of change this is
            pairs: ``(type, value)`` pairs; values may be ``str`` or ``bytes``

        Returns:
            A new :py:class:`ChangeRecord`.

        """
        return cls(
            dn=dn,
            changetype=changetype,
            mods=tuple(ModificationItem(_type, value) for _type, value in pairs),
        )


class OutcomeStatus(enum.Enum):
    #: The change was applied to the replica.
    OK = "ok"
    #: Wait a while and replay the whole record.
    RETRYABLE = "retryable"
    #: Reject the record and go on to the next one.
    FATAL = "fatal"


@dataclass(frozen=True)
class Outcome:
    """
    The result of replicating a :py:class:`ChangeRecord`.

    Args:
        status: what the caller should do next

    Keyword Args:
        message: a description of what went wrong, suitable for operator logs

    """

    status: OutcomeStatus
    message: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is OutcomeStatus.OK

    @property
    def retryable(self) -> bool:
        return self.status is OutcomeStatus.RETRYABLE

    @property
    def fatal(self) -> bool:
        return self.status is OutcomeStatus.FATAL
