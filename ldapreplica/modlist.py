"""
Turn the modification items of a change record into python-ldap requests.

Add records are a flat list of ``attribute: value`` items.  Modify records
are a stream of groups, each opened by an operator item whose value names the
attribute, followed by the values, and closed by a separator::

    replace: cn
    cn: Foo Bar
    -
    add: mail
    mail: foo@example.com
    mail: foo.bar@example.com
    -

Modrdn records carry ``newrdn`` and ``deleteoldrdn`` items.  Delete records
need nothing but their DN.
"""

import enum
import logging
from dataclasses import dataclass, field
from typing import NamedTuple

from ldapreplica import ldap

from .exceptions import (
    BadValueError,
    IncorrectArgumentError,
    MissingArgumentError,
    NoArgumentsError,
    NoModificationsError,
)
from .models import (
    DELETEOLDRDN,
    MOD_OPERATORS,
    MOD_SEPARATOR,
    NEWRDN,
    ChangeRecord,
    ModificationItem,
)
from .typing import AddModlist, ModifyModList

logger = logging.getLogger(__name__)
#: Protocol trace logger; dumps the requests we build
trace_logger = logging.getLogger("ldapreplica.trace")

#: Names of the python-ldap modification types, for logging
MOD_NAMES: dict[int, str] = {value: key for key, value in MOD_OPERATORS.items()}


class ModifyState(enum.Enum):
    #: No group is open; we expect an operator or a separator.
    AWAITING_OP = "awaiting-op"
    #: A group is open; we expect values for its attribute.
    IN_GROUP = "in-group"


@dataclass
class UpdateGroup:
    """
    One operation of a modify request: an operator, the attribute it applies
    to and its values.

    Args:
        operator: one of :py:attr:`ldap.MOD_ADD`, :py:attr:`ldap.MOD_REPLACE`
            or :py:attr:`ldap.MOD_DELETE`
        attribute: the attribute name

    Keyword Args:
        values: the values, in log order

    """

    operator: int
    attribute: str
    values: list[bytes] = field(default_factory=list)

    def matches(self, attribute: str) -> bool:
        return attribute.lower() == self.attribute.lower()

    def as_mod(self) -> tuple[int, str, list[bytes] | None]:
        """
        Return this group as a python-ldap modlist entry.  A group with no
        values applies to the whole attribute.
        """
        return (self.operator, self.attribute, list(self.values) or None)


class RenameArguments(NamedTuple):
    #: The new RDN of the entry
    newrdn: str
    #: ``True`` if the old RDN values should be removed from the entry
    delete_old_rdn: bool


class Modlist:
    """
    Builds python-ldap requests from a :py:class:`~ldapreplica.models.ChangeRecord`.

    Args:
        record: the change record

    """

    def __init__(self, record: ChangeRecord) -> None:
        self.record = record

    def _text(self, item: ModificationItem) -> str:
        """
        Return the value of ``item`` as text, for items whose value names an
        attribute or an RDN.

        Raises:
            BadValueError: the value is not valid UTF-8

        """
        try:
            return item.text
        except UnicodeDecodeError as e:
            logger.error(
                'ldapreplica.modlist.bad-encoding dn=%s type="%s" value=%r',
                self.record.dn,
                item.type,
                item.value,
            )
            raise BadValueError from e

    def add(self) -> AddModlist:
        """
        Build the modlist for ``add_s``: one single-valued entry per item.

        Raises:
            NoModificationsError: the record has no items

        Returns:
            A modlist suitable for ``add_s``.

        """
        if not self.record.mods:
            logger.error("ldapreplica.modlist.add.no-mods dn=%s", self.record.dn)
            raise NoModificationsError
        return [(item.type, [item.value]) for item in self.record.mods]

    def modify(self) -> list[UpdateGroup]:
        """
        Parse the record's items into :py:class:`UpdateGroup` objects.

        Items we can't place are logged and skipped: anything other than an
        operator or separator while no group is open, and values for the wrong
        attribute inside a group.

        Raises:
            NoArgumentsError: the record has no items, or no groups were opened
            BadValueError: an operator item names its attribute in something
                other than UTF-8

        Returns:
            The groups, in log order.

        """
        dn = self.record.dn
        if not self.record.mods:
            logger.error("ldapreplica.modlist.modify.no-arguments dn=%s", dn)
            raise NoArgumentsError
        groups: list[UpdateGroup] = []
        state = ModifyState.AWAITING_OP
        group: UpdateGroup | None = None
        for item in self.record.mods:
            if item.type == MOD_SEPARATOR:
                state = ModifyState.AWAITING_OP
                group = None
                continue
            if item.type in MOD_OPERATORS:
                group = UpdateGroup(MOD_OPERATORS[item.type], self._text(item))
                groups.append(group)
                state = ModifyState.IN_GROUP
                continue
            if state is ModifyState.AWAITING_OP or group is None:
                logger.warning(
                    'ldapreplica.modlist.modify.unknown-type dn=%s type="%s"',
                    dn,
                    item.type,
                )
                continue
            if not group.matches(item.type):
                logger.warning(
                    'ldapreplica.modlist.modify.malformed dn=%s type="%s" expected="%s"',
                    dn,
                    item.type,
                    group.attribute,
                )
                continue
            group.values.append(item.value)
        if not groups:
            logger.error("ldapreplica.modlist.modify.no-groups dn=%s", dn)
            raise NoArgumentsError
        return groups

    def modify_modlist(self) -> ModifyModList:
        """
        Build the modlist for ``modify_s``.

        Groups without values become whole-attribute deletes or replaces.  An
        ``add`` group without values can't be sent, so it is dropped.

        Raises:
            NoArgumentsError: there is nothing left to send

        Returns:
            A modlist suitable for ``modify_s``.

        """
        modlist: ModifyModList = []
        for group in self.modify():
            if group.operator == ldap.MOD_ADD and not group.values:  # type: ignore[attr-defined]
                logger.warning(
                    'ldapreplica.modlist.modify.empty-add dn=%s attribute="%s"',
                    self.record.dn,
                    group.attribute,
                )
                continue
            modlist.append(group.as_mod())
        if not modlist:
            raise NoArgumentsError
        return modlist

    def rename(self) -> RenameArguments:
        """
        Extract the ``newrdn`` and ``deleteoldrdn`` arguments for a modrdn.

        Raises:
            BadValueError: the record has an item that is neither, or a
                ``newrdn`` that is not valid UTF-8
            IncorrectArgumentError: ``deleteoldrdn`` is not ``0`` or ``1``
            MissingArgumentError: ``newrdn`` or ``deleteoldrdn`` is missing

        Returns:
            The rename arguments.

        """
        dn = self.record.dn
        newrdn: str | None = None
        delete_old_rdn: bool | None = None
        for item in self.record.mods:
            if item.type == NEWRDN:
                newrdn = self._text(item)
            elif item.type == DELETEOLDRDN:
                if item.value == b"0":
                    delete_old_rdn = False
                elif item.value == b"1":
                    delete_old_rdn = True
                else:
                    logger.error(
                        'ldapreplica.modlist.modrdn.bad-deleteoldrdn dn=%s value="%s"',
                        dn,
                        item.value,
                    )
                    raise IncorrectArgumentError
            else:
                logger.error(
                    'ldapreplica.modlist.modrdn.bad-type dn=%s type="%s"', dn, item.type
                )
                raise BadValueError
        if newrdn is None or delete_old_rdn is None:
            logger.error("ldapreplica.modlist.modrdn.missing-arguments dn=%s", dn)
            raise MissingArgumentError
        return RenameArguments(newrdn, delete_old_rdn)


def dump_modlist(modlist: AddModlist | ModifyModList) -> None:
    """
    Log the contents of ``modlist`` to the protocol trace logger.
    """
    if not trace_logger.isEnabledFor(logging.DEBUG):
        return
    for i, mod in enumerate(modlist):
        if len(mod) == 3:  # noqa: PLR2004
            op, attribute, values = mod  # type: ignore[misc]
            op_name = MOD_NAMES.get(op, str(op))
        else:
            attribute, values = mod  # type: ignore[misc]
            op_name = "add"
        trace_logger.debug(
            "ldapreplica.trace.mod index=%d op=%s attribute=%s", i, op_name, attribute
        )
        for j, value in enumerate(values or []):
            trace_logger.debug(
                "ldapreplica.trace.value index=%d value_index=%d len=%d value=%r",
                i,
                j,
                len(value),
                value,
            )
