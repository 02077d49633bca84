"""
Bind strategies for replica sessions.

A :py:class:`~ldapreplica.session.ReplicaSession` opens its connection and
then hands it to a :py:class:`BindStrategy` to authenticate.  Two strategies
ship with the package:

* ``simple``: :py:class:`SimpleBindStrategy` binds with a DN and password.
* ``strong``: :py:class:`StrongBindStrategy` gets a Kerberos ticket for the
  replicator's principal from a keytab and does a SASL/GSSAPI bind.  If no
  principal is configured, we read the candidates from the ``kerberosName``
  attribute of the bind DN's entry.

Strong binds need python-ldap built with SASL support and the ``gssapi``
package (``pip install django-ldapreplica[kerberos]``).  Without them the
``strong`` strategy still exists but fails every bind with
:py:class:`~ldapreplica.exceptions.UnsupportedBindMethodError`.

Other strategies can be added with :py:func:`register_bind_strategy`.
"""

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from ldap_filter import Filter

from ldapreplica import ldap

from .conf import get_setting
from .exceptions import (
    StrongBindError,
    SimpleBindError,
    TicketError,
    UnknownBindMethodError,
    UnsupportedBindMethodError,
)
from .results import error_message, result_code

try:
    import gssapi  # type: ignore[import]
except ImportError:
    gssapi = None

if TYPE_CHECKING:
    from .session import ReplicaSession

logger = logging.getLogger(__name__)

TicketAcquirer = Callable[[str, str | None], None]


def strong_auth_available() -> bool:
    """
    Return ``True`` if this installation can do strong (SASL/GSSAPI) binds.
    """
    return gssapi is not None and bool(getattr(ldap, "SASL_AVAIL", 0))


def normalize_principal(principal: str) -> str:
    """
    Normalize a Kerberos principal name: ``name[/instance][@realm]``, with the
    realm upper-cased.

    Args:
        principal: the principal name

    Raises:
        TicketError: ``principal`` can't be parsed

    Returns:
        The normalized principal.

    """
    principal = principal.strip()
    name, _, realm = principal.partition("@")
    if not name or (_ and not realm):
        msg = f'Can\'t parse principal "{principal}"'
        raise TicketError(msg)
    if realm:
        return f"{name}@{realm.upper()}"
    return name


def acquire_ticket(principal: str, keytab: str | None) -> None:
    """
    Get initiator credentials for ``principal`` from ``keytab`` and store them
    in the default credential cache, where libldap's SASL GSSAPI mechanism
    will find them.

    Args:
        principal: the Kerberos principal
        keytab: path to the keytab holding the key for ``principal``.  If
            ``None``, use the default client keytab.

    Raises:
        TicketError: we could not get a ticket

    """
    if gssapi is None:
        msg = "gssapi is not installed"
        raise TicketError(msg)
    store = {"client_keytab": keytab} if keytab else None
    try:
        name = gssapi.Name(principal, gssapi.NameType.kerberos_principal)
        creds = gssapi.Credentials(name=name, usage="initiate", store=store)
        creds.store(usage="initiate", overwrite=True, set_default=True)
    except gssapi.exceptions.GSSError as e:
        raise TicketError(str(e)) from e


class BindStrategy:
    """
    Base class for bind strategies.  Subclasses implement :py:meth:`bind`.
    """

    #: The ``bind_method`` name this strategy is registered under
    name: str = ""

    def check_supported(self, session: "ReplicaSession") -> None:
        """
        Make sure this installation can bind ``session`` this way.  Called
        before any connection to the replica is opened.

        Raises:
            BindError: this strategy can't be used here
        """

    def bind(
        self,
        session: "ReplicaSession",
        connection: ldap.ldapobject.LDAPObject,  # type: ignore[name-defined]
    ) -> None:
        """
        Authenticate ``connection`` for ``session``.

        Args:
            session: the session we're binding
            connection: the freshly opened connection

        Raises:
            BindError: the bind failed

        """
        raise NotImplementedError


class SimpleBindStrategy(BindStrategy):
    """
    Bind with the session's bind DN and password.
    """

    name = "simple"

    def bind(self, session, connection) -> None:
        logger.debug(
            "ldapreplica.bind.simple replica=%s bind_dn=%s",
            session.label,
            session.bind_dn,
        )
        try:
            connection.simple_bind_s(session.bind_dn, session.password or "")
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = (
                f"simple bind to {session.label} as {session.bind_dn} failed: "
                f"{error_message(e)}"
            )
            logger.error(
                "ldapreplica.bind.simple.failed replica=%s bind_dn=%s error=%s",
                session.label,
                session.bind_dn,
                error_message(e),
            )
            raise SimpleBindError(msg, status=result_code(e)) from e


class StrongBindStrategy(BindStrategy):
    """
    Get a Kerberos ticket and do a SASL/GSSAPI bind.

    Keyword Args:
        ticket_acquirer: callable that gets a ticket for a principal from a
            keytab, raising :py:class:`~ldapreplica.exceptions.TicketError` on
            failure.  Defaults to :py:func:`acquire_ticket`.

    """

    name = "strong"

    def __init__(self, ticket_acquirer: TicketAcquirer | None = None) -> None:
        self.ticket_acquirer: TicketAcquirer = ticket_acquirer or acquire_ticket

    def read_principals(self, session, connection) -> list[str]:
        """
        Look up the principal names for ``session.bind_dn`` by reading its
        entry anonymously.

        Args:
            session: the session we're binding
            connection: the open connection

        Raises:
            StrongBindError: the anonymous bind or the search failed, or the
                bind DN's entry is missing or ambiguous

        Returns:
            The principal names found on the entry, possibly empty.

        """
        attribute = get_setting("PRINCIPAL_ATTRIBUTE")
        try:
            connection.simple_bind_s("", "")
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = (
                f"anonymous bind to {session.label} to look up principals "
                f"failed: {error_message(e)}"
            )
            logger.error(
                "ldapreplica.bind.strong.anonymous-bind-failed replica=%s error=%s",
                session.label,
                error_message(e),
            )
            raise StrongBindError(msg, status=result_code(e)) from e
        try:
            results = connection.search_st(
                session.bind_dn,
                ldap.SCOPE_BASE,  # type: ignore[attr-defined]
                Filter.attribute("objectClass").present().to_string(),
                [attribute],
                0,
                get_setting("PRINCIPAL_LOOKUP_TIMEOUT"),
            )
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = (
                f"search for principals of {session.bind_dn} on {session.label} "
                f"failed: {error_message(e)}"
            )
            logger.error(
                "ldapreplica.bind.strong.search-failed replica=%s bind_dn=%s error=%s",
                session.label,
                session.bind_dn,
                error_message(e),
            )
            raise StrongBindError(msg, status=result_code(e)) from e
        # Search references come back with a dn of None
        entries = [(dn, attrs) for dn, attrs in results if dn is not None]
        if not entries:
            msg = f'Can\'t find entry "{session.bind_dn}" on {session.label} for strong bind'
            logger.error(
                "ldapreplica.bind.strong.no-entry replica=%s bind_dn=%s",
                session.label,
                session.bind_dn,
            )
            raise StrongBindError(msg)
        if len(entries) > 1:
            msg = f'Strong bind DN "{session.bind_dn}" on {session.label} is ambiguous'
            logger.error(
                "ldapreplica.bind.strong.ambiguous replica=%s bind_dn=%s entries=%d",
                session.label,
                session.bind_dn,
                len(entries),
            )
            raise StrongBindError(msg)
        attrs = entries[0][1]
        # Attribute names in search results are not case-normalized
        values = next(
            (v for k, v in attrs.items() if k.lower() == attribute.lower()), []
        )
        return [
            v.decode("utf-8") if isinstance(v, bytes) else v for v in values
        ]

    def candidate_principals(self, session, connection) -> list[str]:
        if session.principal:
            return [session.principal]
        return self.read_principals(session, connection)

    def get_ticket(self, session, principals: list[str]) -> str:
        """
        Try each principal in turn until we get a ticket for one.

        Args:
            session: the session we're binding
            principals: the candidate principals

        Raises:
            StrongBindError: we could not get a ticket for any principal

        Returns:
            The principal we got a ticket for.

        """
        for candidate in principals:
            try:
                principal = normalize_principal(candidate)
                self.ticket_acquirer(principal, session.keytab)
            except TicketError as e:
                logger.warning(
                    "ldapreplica.bind.strong.no-ticket replica=%s principal=%s error=%s",
                    session.label,
                    candidate,
                    e,
                )
                continue
            return principal
        msg = f'Could not obtain a ticket for DN "{session.bind_dn}" on {session.label}'
        logger.error(
            "ldapreplica.bind.strong.no-tgt replica=%s bind_dn=%s",
            session.label,
            session.bind_dn,
        )
        raise StrongBindError(msg)

    def check_supported(self, session) -> None:
        if not strong_auth_available():
            msg = (
                f"strong bind for {session.label} requested, but this "
                "installation does not support strong authentication"
            )
            logger.error("ldapreplica.bind.strong.unsupported replica=%s", session.label)
            raise UnsupportedBindMethodError(msg)

    def bind(self, session, connection) -> None:
        self.check_supported(session)
        principals = self.candidate_principals(session, connection)
        if not principals:
            msg = f'Can\'t find a principal for bind DN "{session.bind_dn}" on {session.label}'
            logger.error(
                "ldapreplica.bind.strong.no-principal replica=%s bind_dn=%s",
                session.label,
                session.bind_dn,
            )
            raise StrongBindError(msg)
        principal = self.get_ticket(session, principals)
        # Remember the principal so that rebinds don't repeat the lookup
        session.principal = principal
        logger.debug(
            "ldapreplica.bind.strong replica=%s bind_dn=%s principal=%s",
            session.label,
            session.bind_dn,
            principal,
        )
        try:
            connection.sasl_interactive_bind_s("", ldap.sasl.gssapi())
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            msg = f"strong bind to {session.label} as {principal} failed: {error_message(e)}"
            logger.error(
                "ldapreplica.bind.strong.failed replica=%s principal=%s error=%s",
                session.label,
                principal,
                error_message(e),
            )
            raise StrongBindError(msg, status=result_code(e)) from e


_strategies: dict[str, type[BindStrategy]] = {
    SimpleBindStrategy.name: SimpleBindStrategy,
    StrongBindStrategy.name: StrongBindStrategy,
}


def register_bind_strategy(name: str, strategy: type[BindStrategy]) -> None:
    """
    Make ``strategy`` available as the bind method ``name``.
    """
    _strategies[name] = strategy


def get_bind_strategy(method: str) -> BindStrategy:
    """
    Return a new strategy instance for the bind method ``method``.

    Args:
        method: the bind method name

    Raises:
        UnknownBindMethodError: no strategy is registered for ``method``

    Returns:
        A :py:class:`BindStrategy`.

    """
    try:
        return _strategies[method]()
    except KeyError as e:
        msg = f'unknown bind method "{method}"'
        raise UnknownBindMethodError(msg) from e
