"""Tests for the current-state prober."""
import asyncio

import pytest

from hostcraft.backends import InMemoryBackend
from hostcraft.reconcile_engine import (
    DesiredStateSet,
    ResourceDeclaration,
    ResourceKind,
    StateProber,
)


def desired_set(*decls: ResourceDeclaration, exclusive=()) -> DesiredStateSet:
    for order, decl in enumerate(decls):
        decl.order = order
    return DesiredStateSet(declarations=list(decls), exclusive_kinds=set(exclusive))


def package(name: str) -> ResourceDeclaration:
    return ResourceDeclaration(ResourceKind.PACKAGE, name, {"version": None})


def service(name: str) -> ResourceDeclaration:
    return ResourceDeclaration(ResourceKind.SERVICE, name, {"config": {}})


class TestStateProber:
    """Tests for StateProber.probe()."""

    @pytest.fixture
    def backend(self):
        return InMemoryBackend(state={
            "package": {"git": {"version": "2.43.0"}, "vim": {"version": "9.1"}},
            "service": {"sshd": {"active": True, "config": {"port": 22}}},
            "alias": {"ll": {"command": "ls -l"}, "gs": {"command": "git status"}},
        })

    @pytest.mark.asyncio
    async def test_probe_declared_names(self, backend):
        observed = await StateProber(backend).probe(desired_set(package("git"), package("curl")))

        assert observed.get(ResourceKind.PACKAGE, "git").payload == {"version": "2.43.0"}
        assert observed.get(ResourceKind.PACKAGE, "curl") is None
        # Undeclared packages are not looked at
        assert observed.get(ResourceKind.PACKAGE, "vim") is None
        assert "query:package:git" in backend.calls
        assert "query:package:curl" in backend.calls
        assert observed.errors == {}

    @pytest.mark.asyncio
    async def test_service_payload_has_config_hash(self, backend):
        observed = await StateProber(backend).probe(desired_set(service("sshd")))

        payload = observed.get(ResourceKind.SERVICE, "sshd").payload
        assert payload["active"] is True
        assert len(payload["config_hash"]) == 16

    @pytest.mark.asyncio
    async def test_partial_failure(self, backend):
        """A failing kind does not hide results from the other kinds."""
        backend.fail_on.add("query:service")

        observed = await StateProber(backend).probe(desired_set(package("git"), service("sshd")))

        assert observed.failed(ResourceKind.SERVICE)
        assert not observed.failed(ResourceKind.PACKAGE)
        assert observed.get(ResourceKind.PACKAGE, "git") is not None
        error = observed.errors[ResourceKind.SERVICE]
        assert error.kind == "service"
        assert "query service failed" in error.cause

    @pytest.mark.asyncio
    async def test_timeout_per_kind(self, backend):
        backend.delays[ResourceKind.SERVICE] = 1.0

        observed = await StateProber(backend, timeout=0.05).probe(
            desired_set(package("git"), service("sshd"))
        )

        assert observed.errors[ResourceKind.SERVICE].cause == "timed out after 0.05s"
        assert observed.get(ResourceKind.PACKAGE, "git") is not None

    @pytest.mark.asyncio
    async def test_kinds_probed_concurrently(self, backend):
        backend.delays[ResourceKind.PACKAGE] = 0.3
        backend.delays[ResourceKind.SERVICE] = 0.3
        loop = asyncio.get_running_loop()

        start = loop.time()
        await StateProber(backend, timeout=5).probe(desired_set(package("git"), service("sshd")))

        assert loop.time() - start < 0.55

    @pytest.mark.asyncio
    async def test_exclusive_kind_is_listed(self, backend):
        desired = desired_set(
            ResourceDeclaration(ResourceKind.ALIAS, "ll", {"command": "ls -l"}),
            exclusive=[ResourceKind.ALIAS],
        )

        observed = await StateProber(backend).probe(desired)

        assert "list:alias" in backend.calls
        assert ResourceKind.ALIAS in observed.complete_kinds
        assert sorted(r.name for r in observed.by_kind(ResourceKind.ALIAS)) == ["gs", "ll"]

    @pytest.mark.asyncio
    async def test_exclusive_kind_without_declarations(self, backend):
        observed = await StateProber(backend).probe(desired_set(exclusive=[ResourceKind.ALIAS]))
        assert len(observed.by_kind(ResourceKind.ALIAS)) == 2

    @pytest.mark.asyncio
    async def test_failed_listing_is_not_complete(self, backend):
        backend.fail_on.add("list:alias")

        observed = await StateProber(backend).probe(desired_set(exclusive=[ResourceKind.ALIAS]))

        assert observed.failed(ResourceKind.ALIAS)
        assert ResourceKind.ALIAS not in observed.complete_kinds

    @pytest.mark.asyncio
    async def test_observed_state_to_dict(self, backend):
        backend.fail_on.add("query:service")
        observed = await StateProber(backend).probe(desired_set(package("git"), service("sshd")))

        data = observed.to_dict()
        assert data["resources"] == {"package": {"git": {"version": "2.43.0"}}}
        assert data["errors"][0]["kind"] == "service"
