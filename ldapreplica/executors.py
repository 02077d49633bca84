"""
Operation executors: apply one change record to a bound replica session.

Each executor returns the raw :py:class:`~ldapreplica.results.Status` of the
LDAP operation; deciding what a failure means is the replicator's job.
Change records that can't be turned into a request raise
:py:class:`~ldapreplica.exceptions.ModificationError` before anything is sent.
"""

import logging

from ldapreplica import ldap

from .modlist import Modlist, dump_modlist
from .models import ChangeRecord
from .results import SUCCESS, Status, status_from_exception
from .session import ReplicaSession

logger = logging.getLogger(__name__)


class OperationExecutor:
    """
    Runs add, modify, delete and modrdn operations against ``session``'s
    connection.  The session must already be bound.

    Args:
        session: the bound replica session

    """

    def __init__(self, session: ReplicaSession) -> None:
        self.session = session

    @property
    def connection(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        return self.session.connection

    def last_status(self) -> Status:
        """
        Return the result code of the last operation on our connection.
        """
        return Status(int(self.connection.get_option(ldap.OPT_ERROR_NUMBER)))  # type: ignore[attr-defined]

    def add(self, record: ChangeRecord) -> Status:
        """
        Add the entry described by ``record``.

        Raises:
            NoModificationsError: ``record`` has no attributes

        Returns:
            The last recorded status of the connection.

        """
        modlist = Modlist(record).add()
        logger.debug(
            "ldapreplica.executor.add replica=%s dn=%s", self.session.label, record.dn
        )
        dump_modlist(modlist)
        try:
            self.connection.add_s(record.dn, modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            return status_from_exception(e)
        return self.last_status()

    def modify(self, record: ChangeRecord) -> Status:
        """
        Apply the modify groups in ``record`` to its entry.

        Raises:
            NoArgumentsError: ``record`` yields no modifications

        """
        modlist = Modlist(record).modify_modlist()
        logger.debug(
            "ldapreplica.executor.modify replica=%s dn=%s",
            self.session.label,
            record.dn,
        )
        dump_modlist(modlist)
        try:
            self.connection.modify_s(record.dn, modlist)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            return status_from_exception(e)
        return Status(SUCCESS)

    def delete(self, record: ChangeRecord) -> Status:
        logger.debug(
            "ldapreplica.executor.delete replica=%s dn=%s",
            self.session.label,
            record.dn,
        )
        try:
            self.connection.delete_s(record.dn)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            return status_from_exception(e)
        return Status(SUCCESS)

    def rename(self, record: ChangeRecord) -> Status:
        """
        Change the RDN of ``record``'s entry.

        Note:
            Like :py:meth:`add`, the status is the connection's last recorded
            result code rather than anything ``rename_s`` hands back.

        Raises:
            ModificationError: ``record`` does not have valid ``newrdn`` and
                ``deleteoldrdn`` arguments

        Returns:
            The last recorded status of the connection.

        """
        args = Modlist(record).rename()
        logger.debug(
            "ldapreplica.executor.modrdn replica=%s dn=%s newrdn=%s deleteoldrdn=%d",
            self.session.label,
            record.dn,
            args.newrdn,
            int(args.delete_old_rdn),
        )
        try:
            self.connection.rename_s(
                record.dn, args.newrdn, delold=int(args.delete_old_rdn)
            )
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            return status_from_exception(e)
        return self.last_status()
