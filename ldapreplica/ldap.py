# This file is here so that we can patch ldap.initialize in our tests without
# touching the global python-ldap module.
import ldap
import ldap.sasl
from ldap import *  # noqa: F403

__version__ = ldap.__version__
sasl = ldap.sasl
