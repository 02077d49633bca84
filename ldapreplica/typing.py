"""
Type aliases for the python-ldap data structures built by :py:mod:`ldapreplica`.
"""

AddModlistEntry = tuple[str, list[bytes]]
AddModlist = list[AddModlistEntry]
ModifyModListEntry = tuple[int, str, list[bytes] | None]
ModifyModList = list[ModifyModListEntry]
