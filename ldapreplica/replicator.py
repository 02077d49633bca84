"""
The replicator: apply change records to a replica and tell the caller what
happened.

Example:
    Replay change records against ``replica1`` from ``settings.LDAP_REPLICAS``::

        from ldapreplica.models import ChangeRecord
        from ldapreplica.replicator import Replicator

        replicator = Replicator.from_settings("replica1")
        outcome = replicator.replicate(
            ChangeRecord.from_pairs(
                "uid=foo,ou=people,dc=example,dc=com",
                "modify",
                [("replace", "cn"), ("cn", "Foo Bar"), ("-", "")],
            )
        )
        if outcome.retryable:
            # back off and replay the same record later
            ...
        elif outcome.fatal:
            # log outcome.message and skip the record
            ...
"""

import logging
from collections.abc import Callable
from typing import Any

from .conf import get_setting
from .exceptions import BindError, ModificationError, UnknownChangeTypeError
from .executors import OperationExecutor
from .models import ChangeRecord, ChangeType, Outcome, OutcomeStatus
from .results import Classification, Status, classify
from .session import ReplicaSession, ensure_bound

logger = logging.getLogger(__name__)

#: The name of the LDAP operation behind each change type, for messages
OPERATION_NAMES: dict[ChangeType, str] = {
    ChangeType.ADD: "ldap_add",
    ChangeType.MODIFY: "ldap_modify",
    ChangeType.DELETE: "ldap_delete",
    ChangeType.MODRDN: "ldap_modrdn",
}


class Replicator:
    """
    Applies change records to the replica behind ``session``.

    Only one record may be in flight per session at a time.

    Args:
        session: the replica session

    Keyword Args:
        max_attempts: how many times to try a record when the replica drops
            our connection.  Defaults to ``settings.LDAPREPLICA_MAX_ATTEMPTS``.

    """

    def __init__(
        self, session: ReplicaSession | None, max_attempts: int | None = None
    ) -> None:
        self.session = session
        self.max_attempts: int = (
            max_attempts if max_attempts is not None else get_setting("MAX_ATTEMPTS")
        )

    @classmethod
    def from_settings(cls, name: str, **kwargs: Any) -> "Replicator":
        """
        Build a replicator for the replica ``name`` in ``settings.LDAP_REPLICAS``.

        Args:
            name: the replica name
            **kwargs: overrides for the replica settings

        Returns:
            A new replicator with an unbound session.

        """
        return cls(ReplicaSession.from_settings(name, **kwargs))

    @property
    def label(self) -> str:
        return self.session.label if self.session else "(no replica)"

    def get_executor(
        self, changetype: ChangeType | str
    ) -> Callable[[ChangeRecord], Status]:
        """
        Return the executor method for ``changetype``.

        Raises:
            UnknownChangeTypeError: we don't know how to replicate ``changetype``

        """
        executor = OperationExecutor(self.session)  # type: ignore[arg-type]
        executors = {
            ChangeType.ADD: executor.add,
            ChangeType.MODIFY: executor.modify,
            ChangeType.DELETE: executor.delete,
            ChangeType.MODRDN: executor.rename,
        }
        try:
            return executors[changetype]  # type: ignore[index]
        except KeyError as e:
            msg = f'bad changetype "{changetype}"'
            raise UnknownChangeTypeError(msg) from e

    def replicate(self, record: ChangeRecord) -> Outcome:
        """
        Apply ``record`` to the replica.

        If we aren't bound, bind first; a failed bind is retryable.  If the
        replica turns out to have dropped our connection, rebind and try the
        same record again, up to ``max_attempts`` times in total.  Any other
        failure is fatal.

        Args:
            record: the change record

        Returns:
            The outcome.

        """
        attempts = self.max_attempts
        status: Status | None = None
        while attempts > 0:
            if self.session is None or not self.session.is_bound:
                try:
                    ensure_bound(self.session)
                except BindError as e:
                    logger.error(
                        "ldapreplica.replicate.bind-failed replica=%s dn=%s result=%s error=%s",
                        self.label,
                        record.dn,
                        e.result.value,
                        e.message,
                    )
                    return Outcome(
                        OutcomeStatus.RETRYABLE,
                        f'bind to {self.label} failed replicating "{record.dn}": {e.message}',
                    )
            try:
                executor = self.get_executor(record.changetype)
            except UnknownChangeTypeError as e:
                logger.error(
                    'ldapreplica.replicate.bad-op replica=%s dn=%s changetype="%s"',
                    self.label,
                    record.dn,
                    record.changetype,
                )
                return Outcome(
                    OutcomeStatus.FATAL, f'{e} for "{record.dn}" on {self.label}'
                )
            operation = OPERATION_NAMES[record.changetype]  # type: ignore[index]
            try:
                status = executor(record)
            except ModificationError as e:
                logger.error(
                    'ldapreplica.replicate.bad-record replica=%s op=%s dn=%s error="%s"',
                    self.label,
                    operation,
                    record.dn,
                    e.message,
                )
                return Outcome(
                    OutcomeStatus.FATAL,
                    f'{operation} failed for "{record.dn}" on {self.label}: {e.message}',
                )
            classification = classify(status.code)
            if classification is Classification.SUCCESS:
                logger.debug(
                    "ldapreplica.replicate.ok replica=%s op=%s dn=%s",
                    self.label,
                    operation,
                    record.dn,
                )
                return Outcome(OutcomeStatus.OK)
            logger.error(
                'ldapreplica.replicate.failed replica=%s op=%s dn=%s code=%d error="%s"',
                self.label,
                operation,
                record.dn,
                status.code,
                status.description,
            )
            if classification is Classification.FAIL:
                return Outcome(
                    OutcomeStatus.FATAL,
                    f'{operation} failed for "{record.dn}" on {self.label}: '
                    f"{status.description}",
                )
            # The replica may have timed us out while we were idle
            self.session.unbind()  # type: ignore[union-attr]
            attempts -= 1
        description = status.description if status else "no attempts made"
        return Outcome(
            OutcomeStatus.FATAL,
            f'giving up on "{record.dn}" for {self.label} after '
            f"{self.max_attempts} attempts: {description}",
        )
