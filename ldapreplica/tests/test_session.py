"""
Tests for ReplicaSession and the bind strategies.
"""

import unittest
from unittest.mock import MagicMock, Mock, patch

import ldap
from django.conf import settings

from ldapreplica.auth import (
    SimpleBindStrategy,
    StrongBindStrategy,
    acquire_ticket,
    get_bind_strategy,
    normalize_principal,
    register_bind_strategy,
)
from ldapreplica.exceptions import (
    BadSessionError,
    BindResult,
    ConnectionOpenError,
    SimpleBindError,
    StrongBindError,
    TicketError,
    UnknownBindMethodError,
    UnsupportedBindMethodError,
)
from ldapreplica.session import ReplicaSession, ensure_bound


# Configure Django settings for testing
if not settings.configured:
    settings.configure(
        LDAPREPLICA_MAX_ATTEMPTS=2,
        LDAPREPLICA_PRINCIPAL_LOOKUP_TIMEOUT=30,
    )


BIND_DN = "cn=replicator,dc=example,dc=com"


def simple_session(**kwargs):
    return ReplicaSession(
        "ldap2.example.com",
        bind_dn=BIND_DN,
        password="secret",
        **kwargs,
    )


def strong_session(acquirer, **kwargs):
    return ReplicaSession(
        "ldap2.example.com",
        bind_method="strong",
        bind_dn=BIND_DN,
        keytab="/etc/ldap/replicator.keytab",
        strategy=StrongBindStrategy(ticket_acquirer=acquirer),
        **kwargs,
    )


class TestReplicaSession(unittest.TestCase):
    def setUp(self):
        self.patcher = patch("ldapreplica.ldap.initialize")
        self.initialize = self.patcher.start()
        self.connection = MagicMock()
        self.initialize.return_value = self.connection

    def tearDown(self):
        self.patcher.stop()

    def test_label_and_uri(self):
        session = ReplicaSession("ldap2.example.com", port="1389")
        self.assertEqual(session.label, "ldap2.example.com:1389")
        self.assertEqual(session.uri, "ldap://ldap2.example.com:1389")
        self.assertFalse(session.is_bound)

    def test_simple_bind(self):
        session = simple_session()
        self.assertIs(session.bind(), BindResult.OK)
        self.initialize.assert_called_once_with("ldap://ldap2.example.com:389")
        self.connection.simple_bind_s.assert_called_once_with(BIND_DN, "secret")
        self.connection.set_option.assert_any_call(ldap.OPT_REFERRALS, 0)
        self.connection.set_option.assert_any_call(ldap.OPT_NETWORK_TIMEOUT, 15.0)
        self.assertIs(session.connection, self.connection)
        self.assertTrue(session.is_bound)

    def test_starttls(self):
        session = simple_session(use_starttls=True, tls_verify="always")
        session.bind()
        self.connection.set_option.assert_any_call(
            ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND
        )
        self.connection.start_tls_s.assert_called_once_with()

    def test_missing_ca_certfile(self):
        session = simple_session(tls_ca_certfile="/nonexistent/ca.pem")
        with self.assertLogs("ldapreplica", level="DEBUG"):
            with self.assertRaises(ConnectionOpenError) as cm:
                session.bind()
        self.assertIs(cm.exception.result, BindResult.OPEN)
        self.connection.simple_bind_s.assert_not_called()
        self.connection.unbind_s.assert_called_once_with()
        self.assertFalse(session.is_bound)

    def test_open_failure(self):
        self.connection.start_tls_s.side_effect = ldap.CONNECT_ERROR(
            {"desc": "Connect error"}
        )
        session = simple_session(use_starttls=True)
        with self.assertLogs("ldapreplica.session", level="ERROR"):
            with self.assertRaises(ConnectionOpenError) as cm:
                session.bind()
        self.assertIn("ldap2.example.com:389", cm.exception.message)
        self.connection.simple_bind_s.assert_not_called()
        self.connection.unbind_s.assert_called_once_with()
        self.assertFalse(session.is_bound)

    def test_initialize_failure(self):
        self.initialize.side_effect = ldap.LDAPError({"desc": "Bad parameter to an ldap routine"})
        session = simple_session()
        with self.assertLogs("ldapreplica.session", level="ERROR"):
            with self.assertRaises(ConnectionOpenError):
                session.bind()
        self.assertFalse(session.is_bound)

    def test_simple_bind_failure(self):
        self.connection.simple_bind_s.side_effect = ldap.INVALID_CREDENTIALS(
            {"result": 49, "desc": "Invalid credentials"}
        )
        session = simple_session()
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(SimpleBindError) as cm:
                session.bind()
        self.assertIs(cm.exception.result, BindResult.SIMPLE_FAILED)
        self.assertEqual(cm.exception.status, 49)
        self.assertIn("Invalid credentials", cm.exception.message)
        self.connection.unbind_s.assert_called_once_with()
        self.assertIsNone(session.connection)

    def test_rebind_drops_the_old_connection(self):
        old = MagicMock()
        session = simple_session()
        session.connection = old
        session.bind()
        old.unbind_s.assert_called_once_with()
        self.assertIs(session.connection, self.connection)

    def test_failed_unbind_of_old_connection_is_ignored(self):
        old = MagicMock()
        old.unbind_s.side_effect = ldap.SERVER_DOWN({"desc": "Can't contact LDAP server"})
        session = simple_session()
        session.connection = old
        with self.assertLogs("ldapreplica.session", level="WARNING") as logs:
            self.assertIs(session.bind(), BindResult.OK)
        self.assertIn("unbind.failed", logs.output[0])
        self.assertIs(session.connection, self.connection)

    def test_unbind(self):
        session = simple_session()
        session.bind()
        session.unbind()
        self.connection.unbind_s.assert_called_once_with()
        self.assertIsNone(session.connection)
        # Unbinding an unbound session does nothing
        session.unbind()
        self.connection.unbind_s.assert_called_once_with()

    def test_unknown_bind_method(self):
        session = ReplicaSession("ldap2.example.com", bind_method="kerberos5")
        with self.assertLogs("ldapreplica.session", level="ERROR"):
            with self.assertRaises(UnknownBindMethodError) as cm:
                session.bind()
        self.assertIs(cm.exception.result, BindResult.BAD_METHOD)
        self.assertIn('"kerberos5"', cm.exception.message)
        self.assertIn("ldap2.example.com:389", cm.exception.message)
        self.initialize.assert_not_called()

    def test_registered_strategy(self):
        class AnonymousBindStrategy(SimpleBindStrategy):
            name = "anonymous"

            def bind(self, session, connection):
                connection.simple_bind_s("", "")

        register_bind_strategy("anonymous", AnonymousBindStrategy)
        self.assertIsInstance(get_bind_strategy("anonymous"), AnonymousBindStrategy)
        session = ReplicaSession("ldap2.example.com", bind_method="anonymous")
        session.bind()
        self.connection.simple_bind_s.assert_called_once_with("", "")


class TestEnsureBound(unittest.TestCase):
    def test_no_session(self):
        with self.assertLogs("ldapreplica.session", level="ERROR"):
            with self.assertRaises(BadSessionError) as cm:
                ensure_bound(None)
        self.assertIs(cm.exception.result, BindResult.BAD_SESSION)

    def test_already_bound_does_nothing(self):
        session = simple_session()
        session.connection = MagicMock()
        with patch("ldapreplica.ldap.initialize") as initialize:
            self.assertIs(ensure_bound(session), BindResult.OK)
        initialize.assert_not_called()
        session.connection.simple_bind_s.assert_not_called()

    def test_binds_when_unbound(self):
        session = simple_session()
        connection = MagicMock()
        with patch("ldapreplica.ldap.initialize", return_value=connection):
            self.assertIs(ensure_bound(session), BindResult.OK)
        self.assertIs(session.connection, connection)


@patch("ldapreplica.auth.strong_auth_available", return_value=True)
class TestStrongBind(unittest.TestCase):
    def setUp(self):
        self.patcher = patch("ldapreplica.ldap.initialize")
        self.initialize = self.patcher.start()
        self.connection = MagicMock()
        self.initialize.return_value = self.connection
        self.connection.search_st.return_value = [
            (BIND_DN, {"kerberosName": [b"replicator@example.com"]})
        ]

    def tearDown(self):
        self.patcher.stop()

    def test_lookup_and_bind(self, _available):
        acquirer = Mock()
        session = strong_session(acquirer)
        self.assertIs(session.bind(), BindResult.OK)
        self.connection.simple_bind_s.assert_called_once_with("", "")
        args = self.connection.search_st.call_args[0]
        self.assertEqual(args[0], BIND_DN)
        self.assertEqual(args[1], ldap.SCOPE_BASE)
        self.assertEqual(args[2], "(objectClass=*)")
        self.assertEqual(args[3], ["kerberosName"])
        self.assertEqual(args[5], 30)
        acquirer.assert_called_once_with(
            "replicator@EXAMPLE.COM", "/etc/ldap/replicator.keytab"
        )
        self.connection.sasl_interactive_bind_s.assert_called_once()
        self.assertEqual(session.principal, "replicator@EXAMPLE.COM")

    def test_principal_is_remembered(self, _available):
        session = strong_session(Mock())
        session.bind()
        second = MagicMock()
        self.initialize.return_value = second
        session.bind()
        second.search_st.assert_not_called()
        second.sasl_interactive_bind_s.assert_called_once()
        self.assertIs(session.connection, second)

    def test_configured_principal_skips_lookup(self, _available):
        acquirer = Mock()
        session = strong_session(acquirer, principal="repl/ldap2@example.com")
        session.bind()
        self.connection.search_st.assert_not_called()
        acquirer.assert_called_once_with(
            "repl/ldap2@EXAMPLE.COM", "/etc/ldap/replicator.keytab"
        )

    def test_first_principal_that_works_wins(self, _available):
        self.connection.search_st.return_value = [
            (
                BIND_DN,
                {"KerberosName": [b"old@example.com", b"new@example.com"]},
            )
        ]
        acquirer = Mock(side_effect=[TicketError("Key table entry not found"), None])
        session = strong_session(acquirer)
        with self.assertLogs("ldapreplica.auth", level="WARNING") as logs:
            session.bind()
        self.assertIn("old@example.com", logs.output[0])
        self.assertEqual(session.principal, "new@EXAMPLE.COM")
        self.assertEqual(acquirer.call_count, 2)

    def test_no_ticket(self, _available):
        acquirer = Mock(side_effect=TicketError("Key table entry not found"))
        session = strong_session(acquirer)
        with self.assertLogs("ldapreplica.auth", level="WARNING"):
            with self.assertRaises(StrongBindError) as cm:
                session.bind()
        self.assertIs(cm.exception.result, BindResult.STRONG_FAILED)
        self.assertIn("Could not obtain a ticket", cm.exception.message)
        self.connection.sasl_interactive_bind_s.assert_not_called()
        self.assertIsNone(session.principal)
        self.assertFalse(session.is_bound)

    def test_entry_not_found(self, _available):
        self.connection.search_st.return_value = [(None, ["ldap://elsewhere/"])]
        session = strong_session(Mock())
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(StrongBindError) as cm:
                session.bind()
        self.assertIn("Can't find entry", cm.exception.message)

    def test_ambiguous_entry(self, _available):
        self.connection.search_st.return_value = [
            (BIND_DN, {"kerberosName": [b"a@example.com"]}),
            ("cn=replicator,ou=other,dc=example,dc=com", {"kerberosName": [b"b@example.com"]}),
        ]
        session = strong_session(Mock())
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(StrongBindError) as cm:
                session.bind()
        self.assertIn("ambiguous", cm.exception.message)

    def test_entry_without_principals(self, _available):
        self.connection.search_st.return_value = [(BIND_DN, {})]
        acquirer = Mock()
        session = strong_session(acquirer)
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(StrongBindError) as cm:
                session.bind()
        self.assertIn("Can't find a principal", cm.exception.message)
        acquirer.assert_not_called()

    def test_search_failure(self, _available):
        self.connection.search_st.side_effect = ldap.TIMEOUT({"desc": "Timed out"})
        session = strong_session(Mock())
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(StrongBindError):
                session.bind()
        self.connection.unbind_s.assert_called_once_with()

    def test_sasl_failure(self, _available):
        self.connection.sasl_interactive_bind_s.side_effect = ldap.INVALID_CREDENTIALS(
            {"result": 49, "desc": "Invalid credentials"}
        )
        session = strong_session(Mock())
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(StrongBindError) as cm:
                session.bind()
        self.assertEqual(cm.exception.status, 49)
        self.assertFalse(session.is_bound)

    def test_unsupported(self, available):
        available.return_value = False
        acquirer = Mock()
        session = strong_session(acquirer)
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(UnsupportedBindMethodError) as cm:
                session.bind()
        self.assertIsInstance(cm.exception, StrongBindError)
        self.assertIs(cm.exception.result, BindResult.STRONG_FAILED)
        self.initialize.assert_not_called()
        self.connection.simple_bind_s.assert_not_called()
        self.connection.search_st.assert_not_called()
        self.connection.sasl_interactive_bind_s.assert_not_called()
        acquirer.assert_not_called()
        self.assertFalse(session.is_bound)

    def test_unsupported_with_starttls(self, available):
        available.return_value = False
        session = strong_session(Mock(), use_starttls=True)
        with self.assertLogs("ldapreplica.auth", level="ERROR"):
            with self.assertRaises(UnsupportedBindMethodError):
                session.bind()
        self.initialize.assert_not_called()
        self.connection.start_tls_s.assert_not_called()


class KerberosFailure(Exception):
    pass


class TestAcquireTicket(unittest.TestCase):
    KEYTAB = "/etc/ldap/replicator.keytab"

    @patch("ldapreplica.auth.gssapi")
    def test_ticket_from_keytab(self, gssapi):
        acquire_ticket("replicator@EXAMPLE.COM", self.KEYTAB)
        gssapi.Name.assert_called_once_with(
            "replicator@EXAMPLE.COM", gssapi.NameType.kerberos_principal
        )
        gssapi.Credentials.assert_called_once_with(
            name=gssapi.Name.return_value,
            usage="initiate",
            store={"client_keytab": self.KEYTAB},
        )
        gssapi.Credentials.return_value.store.assert_called_once_with(
            usage="initiate", overwrite=True, set_default=True
        )

    @patch("ldapreplica.auth.gssapi")
    def test_default_keytab(self, gssapi):
        acquire_ticket("replicator@EXAMPLE.COM", None)
        self.assertIsNone(gssapi.Credentials.call_args.kwargs["store"])

    @patch("ldapreplica.auth.gssapi")
    def test_gss_failure(self, gssapi):
        gssapi.exceptions.GSSError = KerberosFailure
        gssapi.Credentials.side_effect = KerberosFailure("Key table entry not found")
        with self.assertRaises(TicketError) as cm:
            acquire_ticket("replicator@EXAMPLE.COM", self.KEYTAB)
        self.assertIn("Key table entry not found", str(cm.exception))
        self.assertIsInstance(cm.exception.__cause__, KerberosFailure)

    @patch("ldapreplica.auth.gssapi", None)
    def test_gssapi_not_installed(self):
        with self.assertRaises(TicketError):
            acquire_ticket("replicator@EXAMPLE.COM", self.KEYTAB)


class TestNormalizePrincipal(unittest.TestCase):
    def test_realm_is_upper_cased(self):
        self.assertEqual(
            normalize_principal("replicator@example.com"), "replicator@EXAMPLE.COM"
        )
        self.assertEqual(
            normalize_principal(" repl/ldap2.example.com@Example.Com "),
            "repl/ldap2.example.com@EXAMPLE.COM",
        )

    def test_no_realm(self):
        self.assertEqual(normalize_principal("replicator"), "replicator")

    def test_unparseable(self):
        for principal in ("", "@EXAMPLE.COM", "replicator@"):
            with self.assertRaises(TicketError):
                normalize_principal(principal)
