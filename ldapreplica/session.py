"""
Replica sessions.

A :py:class:`ReplicaSession` owns the connection to one replica.  It is
created once at configuration time and outlives many change records: the
connection is opened and bound on demand by :py:func:`ensure_bound`, and
dropped by :py:meth:`ReplicaSession.unbind` when the replica goes away.

Sessions are not thread-safe.  Use one session per worker, or serialize
access to it.
"""

import logging
from pathlib import Path
from typing import Any, NoReturn

from ldapreplica import ldap

from .auth import BindStrategy, get_bind_strategy
from .conf import get_replica_config
from .exceptions import (
    BadSessionError,
    BindError,
    BindResult,
    ConnectionOpenError,
    UnknownBindMethodError,
)
from .results import error_message, result_code

logger = logging.getLogger(__name__)


class ReplicaSession:
    """
    The connection state for one replica.

    Args:
        host: the replica's hostname

    Keyword Args:
        port: the replica's port
        bind_method: ``simple`` or ``strong``, or the name of a strategy
            registered with :py:func:`~ldapreplica.auth.register_bind_strategy`
        bind_dn: the DN to bind as
        password: the password for ``bind_dn`` (simple binds)
        principal: the Kerberos principal to use (strong binds).  If not
            given, it is looked up from ``bind_dn``'s entry.
        keytab: the keytab holding the key for the principal (strong binds)
        timeout: network timeout in seconds
        use_starttls: if ``True``, do StartTLS before binding
        tls_verify: ``never`` or ``always``
        tls_ca_certfile: path to the CA certificate to verify the replica with
        strategy: use this strategy instead of the one named by ``bind_method``
        name: a name for this replica, for logging

    """

    def __init__(
        self,
        host: str,
        port: int = 389,
        bind_method: str = "simple",
        bind_dn: str | None = None,
        password: str | None = None,
        principal: str | None = None,
        keytab: str | None = None,
        timeout: float = 15.0,
        use_starttls: bool = False,
        tls_verify: str = "never",
        tls_ca_certfile: str | None = None,
        strategy: BindStrategy | None = None,
        name: str | None = None,
    ) -> None:
        self.host = host
        self.port = int(port)
        self.bind_method = bind_method
        self.bind_dn = bind_dn
        self.password = password
        #: The principal for strong binds.  Set by the strong strategy once it
        #: finds one that works.
        self.principal = principal
        self.keytab = keytab
        self.timeout = timeout
        self.use_starttls = use_starttls
        self.tls_verify = tls_verify
        self.tls_ca_certfile = tls_ca_certfile
        self.strategy = strategy
        self.name = name
        #: Our bound connection, or ``None`` if we're not bound
        self.connection: ldap.ldapobject.LDAPObject | None = None  # type: ignore[name-defined]

    @classmethod
    def from_settings(cls, name: str, **kwargs: Any) -> "ReplicaSession":
        """
        Build a session for the replica ``name`` in ``settings.LDAP_REPLICAS``.

        Args:
            name: the replica name
            **kwargs: overrides for the settings, e.g. ``strategy``

        Raises:
            ImproperlyConfigured: the replica is not configured properly

        Returns:
            A new, unbound session.

        """
        config = get_replica_config(name)
        config.update(kwargs)
        config.setdefault("name", name)
        return cls(**config)

    def __repr__(self) -> str:
        return f"<ReplicaSession: {self.label} bound={self.is_bound}>"

    @property
    def label(self) -> str:
        """``host:port``, for log and error messages."""
        return f"{self.host}:{self.port}"

    @property
    def uri(self) -> str:
        return f"ldap://{self.host}:{self.port}"

    @property
    def is_bound(self) -> bool:
        return self.connection is not None

    def _connect(self) -> ldap.ldapobject.LDAPObject:  # type: ignore[name-defined]
        """
        Open a new connection to the replica and set our connection options.

        Raises:
            ConnectionOpenError: the connection could not be opened.  Any
                half-configured connection has already been discarded.

        Returns:
            The new, unbound connection.

        """
        logger.debug("ldapreplica.session.open replica=%s", self.label)
        try:
            connection = ldap.initialize(self.uri)
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._open_failed(e)
        try:
            self._configure(connection)
        except ConnectionOpenError:
            self._discard(connection)
            raise
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            self._discard(connection)
            self._open_failed(e)
        return connection

    def _open_failed(self, exc: Exception) -> NoReturn:
        msg = f"could not open a connection to {self.label}: {error_message(exc)}"
        logger.error(
            "ldapreplica.session.open.failed replica=%s error=%s",
            self.label,
            error_message(exc),
        )
        raise ConnectionOpenError(msg, status=result_code(exc)) from exc

    def _configure(self, connection: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        """
        Set our connection options on ``connection`` and do StartTLS if asked.
        """
        # Never chase referrals: we must write to this replica only
        connection.set_option(ldap.OPT_REFERRALS, 0)  # type: ignore[attr-defined]
        connection.set_option(ldap.OPT_RESTART, ldap.OPT_ON)  # type: ignore[attr-defined]
        connection.set_option(ldap.OPT_NETWORK_TIMEOUT, float(self.timeout))  # type: ignore[attr-defined]
        if self.tls_verify == "always":
            connection.set_option(
                ldap.OPT_X_TLS_REQUIRE_CERT,  # type: ignore[attr-defined]
                ldap.OPT_X_TLS_DEMAND,  # type: ignore[attr-defined]
            )
        else:
            connection.set_option(
                ldap.OPT_X_TLS_REQUIRE_CERT,  # type: ignore[attr-defined]
                ldap.OPT_X_TLS_NEVER,  # type: ignore[attr-defined]
            )
        if self.tls_ca_certfile:
            if not Path(self.tls_ca_certfile).is_file():
                msg = f"CA Certificate file does not exist: {self.tls_ca_certfile}"
                raise ConnectionOpenError(msg)
            connection.set_option(ldap.OPT_X_TLS_CACERTFILE, self.tls_ca_certfile)  # type: ignore[attr-defined]
        if self.use_starttls:
            connection.set_option(ldap.OPT_X_TLS_NEWCTX, 0)  # type: ignore[attr-defined]
            connection.start_tls_s()

    def bind(self) -> BindResult:
        """
        Open a new connection to the replica and authenticate it, dropping any
        connection we already have.

        Raises:
            BindError: we could not open or authenticate the connection.  The
                session is left unbound.

        Returns:
            :py:attr:`BindResult.OK`

        """
        if self.connection is not None:
            self.unbind()
        try:
            strategy = self.strategy or get_bind_strategy(self.bind_method)
        except UnknownBindMethodError as e:
            logger.error(
                "ldapreplica.session.bad-method replica=%s method=%s",
                self.label,
                self.bind_method,
            )
            msg = f"{e.message} for {self.label}"
            raise UnknownBindMethodError(msg) from e
        strategy.check_supported(self)
        connection = self._connect()
        try:
            strategy.bind(self, connection)
        except BindError:
            self._discard(connection)
            raise
        self.connection = connection
        logger.info(
            "ldapreplica.session.bound replica=%s method=%s",
            self.label,
            self.bind_method,
        )
        return BindResult.OK

    def unbind(self) -> None:
        """
        Drop our connection, if we have one.  Unbind failures are logged and
        otherwise ignored; the session is always unbound afterwards.
        """
        if self.connection is None:
            return
        connection, self.connection = self.connection, None
        self._discard(connection)
        logger.debug("ldapreplica.session.unbound replica=%s", self.label)

    def _discard(self, connection: ldap.ldapobject.LDAPObject) -> None:  # type: ignore[name-defined]
        try:
            connection.unbind_s()
        except ldap.LDAPError as e:  # type: ignore[attr-defined]
            logger.warning(
                "ldapreplica.session.unbind.failed replica=%s error=%s",
                self.label,
                error_message(e),
            )


def ensure_bound(session: ReplicaSession | None) -> BindResult:
    """
    Make sure ``session`` has a bound connection, binding if necessary.  If
    it already has one, no network traffic happens.

    Args:
        session: the session to bind

    Raises:
        BadSessionError: ``session`` is ``None``
        BindError: binding failed

    Returns:
        :py:attr:`BindResult.OK`

    """
    if session is None:
        logger.error("ldapreplica.session.bad-session")
        msg = "no replica session given"
        raise BadSessionError(msg)
    if session.is_bound:
        return BindResult.OK
    return session.bind()
