"""Built-in provisioning workflows.

Importing this package registers every definition in
:data:`provisio.registry.WORKFLOWS`.
"""

from . import apps, backup, database, domain, email, ssl  # noqa: F401
