"""Login script executed inside a sandbox to give an identity its own shell.

The script maps the reserved superuser name to an alias, creates the account
on first use, and switches into it. Shared base images therefore need no
per-identity build step.
"""

from __future__ import annotations

import re
import shlex

from sshbox.errors import InvalidIdentity

IDENTITY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9._-]{0,31}$")

_LOGIN_SCRIPT = """\
user={user}
if [ "$user" = root ]; then
  user={root_alias}
fi
if ! getent passwd "$user" > /dev/null 2>&1; then
  adduser --disabled-password --gecos '' "$user" > /dev/null 2>&1
fi
cd "/home/$user"
exec su "$user"
"""


def validate_identity(identity: str) -> str:
    if not IDENTITY_RE.match(identity):
        raise InvalidIdentity(f"Identity is not a valid account name: {identity!r}")
    return identity


def login_script(identity: str, root_alias: str = "r00t") -> str:
    validate_identity(identity)
    validate_identity(root_alias)
    return _LOGIN_SCRIPT.format(user=shlex.quote(identity), root_alias=shlex.quote(root_alias))
