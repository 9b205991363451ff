"""Tests for SandboxRegistry create-or-reuse semantics."""

import os
import threading

import pytest

from fakes.docker import FakeRuntime
from sshbox.config import SandboxPolicy
from sshbox.errors import InvalidIdentity, SandboxCreateFailed, SandboxRemoveFailed
from sshbox.sandbox.registry import SandboxRegistry

PERSISTENT = SandboxPolicy(persistent=True)
EPHEMERAL = SandboxPolicy(persistent=False)


def _resolve_concurrently(registry, identities, policy):
    barrier = threading.Barrier(len(identities))
    results: dict[int, str] = {}
    errors: list[BaseException] = []

    def worker(i, identity):
        barrier.wait()
        try:
            results[i] = registry.resolve(identity, policy).sandbox_id
        except BaseException as e:  # noqa: BLE001 - surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(i, ident)) for i, ident in enumerate(identities)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)
    assert not errors
    return [results[i] for i in range(len(identities))]


class TestPersistent:
    def test_back_to_back_sessions_share_sandbox(self):
        runtime = FakeRuntime()
        registry = SandboxRegistry(runtime)
        first = registry.resolve("alice", PERSISTENT)
        second = registry.resolve("alice", PERSISTENT)
        assert first.sandbox_id == second.sandbox_id
        assert first.persistent is True
        assert len(runtime.created) == 1
        assert registry.lookup("alice") == first.sandbox_id

    def test_concurrent_first_sessions_create_once(self):
        runtime = FakeRuntime(create_delay=0.2)
        registry = SandboxRegistry(runtime)
        ids = _resolve_concurrently(registry, ["alice"] * 4, PERSISTENT)
        assert len(set(ids)) == 1
        assert len(runtime.created) == 1

    def test_different_identities_get_different_sandboxes(self):
        runtime = FakeRuntime(create_delay=0.05)
        registry = SandboxRegistry(runtime)
        ids = _resolve_concurrently(registry, ["alice", "bob"], PERSISTENT)
        assert ids[0] != ids[1]
        assert sorted(identity for _, identity in runtime.created) == ["alice", "bob"]

    def test_name_is_derived_from_pid_and_identity(self):
        runtime = FakeRuntime()
        SandboxRegistry(runtime).resolve("alice", PERSISTENT)
        assert runtime.created == [(f"sshbox-{os.getpid()}-alice", "alice")]

    def test_shell_command_execs_into_sandbox(self):
        registry = SandboxRegistry(FakeRuntime())
        sandbox = registry.resolve("alice", PERSISTENT)
        assert sandbox.shell_command == ["docker", "exec", "-it", sandbox.sandbox_id]

    def test_failed_create_is_not_recorded_and_retries(self):
        runtime = FakeRuntime(fail_create=True)
        registry = SandboxRegistry(runtime)
        with pytest.raises(SandboxCreateFailed) as excinfo:
            registry.resolve("alice", PERSISTENT)
        assert "Unable to find image" in excinfo.value.output
        assert registry.lookup("alice") is None

        runtime.fail_create = False
        sandbox = registry.resolve("alice", PERSISTENT)
        assert registry.lookup("alice") == sandbox.sandbox_id
        assert len(runtime.created) == 2


class TestEphemeral:
    def test_every_session_gets_a_fresh_sandbox(self):
        runtime = FakeRuntime()
        registry = SandboxRegistry(runtime)
        ids = [registry.resolve("alice", EPHEMERAL).sandbox_id for _ in range(3)]
        assert len(set(ids)) == 3
        assert runtime.created == []
        assert registry.lookup("alice") is None

    def test_concurrent_sessions_do_not_collide(self):
        registry = SandboxRegistry(FakeRuntime())
        ids = _resolve_concurrently(registry, ["alice"] * 8, EPHEMERAL)
        assert len(set(ids)) == 8

    def test_release_forgets_sandbox(self):
        registry = SandboxRegistry(FakeRuntime())
        sandbox = registry.resolve("alice", EPHEMERAL)
        assert sandbox.persistent is False
        assert registry.tracked() == [sandbox.sandbox_id]
        registry.release(sandbox)
        assert registry.tracked() == []


def test_invalid_identity_never_reaches_engine():
    runtime = FakeRuntime()
    registry = SandboxRegistry(runtime)
    with pytest.raises(InvalidIdentity):
        registry.resolve("alice; rm -rf /", PERSISTENT)
    assert runtime.created == []


class TestDestroyAll:
    def test_removes_everything_in_one_call(self):
        runtime = FakeRuntime()
        registry = SandboxRegistry(runtime)
        alice = registry.resolve("alice", PERSISTENT).sandbox_id
        bob = registry.resolve("bob", PERSISTENT).sandbox_id
        live = registry.resolve("carol", EPHEMERAL).sandbox_id
        registry.destroy_all()
        assert len(runtime.removed) == 1
        assert sorted(runtime.removed[0]) == sorted([alice, bob, live])
        assert registry.tracked() == []
        assert registry.lookup("alice") is None

    def test_nothing_tracked_is_a_noop(self):
        runtime = FakeRuntime()
        SandboxRegistry(runtime).destroy_all()
        assert runtime.removed == []

    def test_failure_is_reported_and_entries_kept(self):
        runtime = FakeRuntime(fail_remove=True)
        registry = SandboxRegistry(runtime)
        sandbox = registry.resolve("alice", PERSISTENT)
        with pytest.raises(SandboxRemoveFailed):
            registry.destroy_all()
        assert runtime.removed == [[sandbox.sandbox_id]]
        assert registry.lookup("alice") == sandbox.sandbox_id
