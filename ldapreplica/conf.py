"""
Replica configuration.

Replicas are declared in Django settings as ``LDAP_REPLICAS``, a dictionary
keyed by replica name::

    LDAP_REPLICAS = {
        "replica1": {
            "host": "ldap2.example.com",
            "port": 389,
            "bind_method": "simple",
            "bind_dn": "cn=replicator,dc=example,dc=com",
            "password": "the password",
        },
        "replica2": {
            "host": "ldap3.example.com",
            "bind_method": "strong",
            "bind_dn": "cn=replicator,dc=example,dc=com",
            "keytab": "/etc/ldap/replicator.keytab",
        },
    }

Package wide tunables are ``LDAPREPLICA_`` prefixed settings; see
:py:func:`get_setting`.
"""

from typing import Any

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


#: Defaults for the optional keys of a replica definition
REPLICA_DEFAULTS: dict[str, Any] = {
    "port": 389,
    "bind_method": "simple",
    "bind_dn": None,
    "password": None,
    "principal": None,
    "keytab": None,
    "timeout": 15.0,
    "use_starttls": False,
    "tls_verify": "never",
    "tls_ca_certfile": None,
}

#: Defaults for our ``LDAPREPLICA_`` settings
SETTING_DEFAULTS: dict[str, Any] = {
    "MAX_ATTEMPTS": 2,
    "PRINCIPAL_LOOKUP_TIMEOUT": 30,
    "PRINCIPAL_ATTRIBUTE": "kerberosName",
}


def get_setting(setting_name: str) -> Any:
    """
    Get one of our tunables from Django settings with fallback to our default.

    Args:
        setting_name: Name of the setting (without the ``LDAPREPLICA_`` prefix)

    Returns:
        The configured value, or the default from :py:data:`SETTING_DEFAULTS`.

    """
    return getattr(settings, f"LDAPREPLICA_{setting_name}", SETTING_DEFAULTS[setting_name])


def get_replica_config(name: str) -> dict[str, Any]:
    """
    Return the full configuration for the replica named ``name``, with
    defaults filled in for any keys that were not set.

    Args:
        name: the key of the replica in ``settings.LDAP_REPLICAS``

    Raises:
        ImproperlyConfigured: ``LDAP_REPLICAS`` is missing, has no replica
            named ``name``, or that replica's configuration is invalid

    Returns:
        The replica configuration.

    """
    replicas = getattr(settings, "LDAP_REPLICAS", None)
    if not replicas:
        msg = "settings.LDAP_REPLICAS is not defined"
        raise ImproperlyConfigured(msg)
    try:
        raw = replicas[name]
    except KeyError as e:
        msg = f'settings.LDAP_REPLICAS has no replica named "{name}"'
        raise ImproperlyConfigured(msg) from e
    config = {**REPLICA_DEFAULTS, **raw}
    validate_replica_config(name, config)
    return config


def validate_replica_config(name: str, config: dict[str, Any]) -> None:
    """
    Check a replica configuration for consistency.

    Note:
        An unknown ``bind_method`` is deliberately not an error here; that is
        reported when we try to bind, so that the replicator can surface it
        per change record.

    Args:
        name: the name of the replica, for error messages
        config: the replica configuration

    Raises:
        ImproperlyConfigured: the configuration is invalid

    """
    if not config.get("host"):
        msg = f'LDAP_REPLICAS["{name}"] has no "host"'
        raise ImproperlyConfigured(msg)
    try:
        port = int(config["port"])
    except (TypeError, ValueError) as e:
        msg = f'LDAP_REPLICAS["{name}"]["port"] is not an integer: {config["port"]}'
        raise ImproperlyConfigured(msg) from e
    if not 0 < port < 65536:  # noqa: PLR2004
        msg = f'LDAP_REPLICAS["{name}"]["port"] is out of range: {port}'
        raise ImproperlyConfigured(msg)
    if config["tls_verify"] not in ("never", "always"):
        msg = f'LDAP_REPLICAS["{name}"] has an invalid tls_verify value: {config["tls_verify"]}'
        raise ImproperlyConfigured(msg)
    if config["bind_method"] == "simple" and not config["bind_dn"]:
        msg = f'LDAP_REPLICAS["{name}"] uses simple binds but has no "bind_dn"'
        raise ImproperlyConfigured(msg)
    if (
        config["bind_method"] == "strong"
        and not config["bind_dn"]
        and not config["principal"]
    ):
        msg = (
            f'LDAP_REPLICAS["{name}"] uses strong binds but has neither '
            '"bind_dn" nor "principal"'
        )
        raise ImproperlyConfigured(msg)
