import pytest

from sshbox.errors import InvalidIdentity
from sshbox.sandbox.login import login_script, validate_identity


def test_script_switches_to_identity():
    script = login_script("alice")
    assert script.startswith("user=alice\n")
    assert "getent passwd" in script
    assert "adduser --disabled-password" in script
    assert 'exec su "$user"' in script


def test_root_maps_to_alias():
    script = login_script("root", root_alias="toor")
    assert 'if [ "$user" = root ]; then\n  user=toor\n' in script


@pytest.mark.parametrize("identity", ["", "1abc", "a b", "$(id)", "alice;reboot", "x" * 40, "../etc"])
def test_rejects_unusable_identities(identity):
    with pytest.raises(InvalidIdentity):
        validate_identity(identity)


@pytest.mark.parametrize("identity", ["alice", "_svc", "dev.ops", "build-01", "Bob"])
def test_accepts_account_names(identity):
    assert validate_identity(identity) == identity
