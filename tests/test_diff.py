"""Tests for the diff and plan engine."""
import pytest

from hostcraft.reconcile_engine import (
    ActionType,
    ConfigValidator,
    DeclarationParser,
    DesiredStateSet,
    DiffEngine,
    Ensure,
    ModelBuilder,
    ObservedResource,
    ObservedState,
    PlanError,
    ProbeError,
    ResourceDeclaration,
    ResourceKind,
    summarize_plan,
)


def desired_set(*decls: ResourceDeclaration, edges=(), exclusive=()) -> DesiredStateSet:
    for order, decl in enumerate(decls):
        decl.order = order
    return DesiredStateSet(
        declarations=list(decls),
        edges=list(edges),
        exclusive_kinds=set(exclusive),
    )


def observed_state(*resources: ObservedResource, complete=()) -> ObservedState:
    observed = ObservedState(complete_kinds=set(complete))
    for resource in resources:
        observed.add(resource)
    return observed


def build(text: str) -> DesiredStateSet:
    tree = DeclarationParser().parse(text, env={})
    result = ConfigValidator().validate(tree)
    assert result.valid, result.errors
    return ModelBuilder().build(result.tree)


WORKSTATION = """
{
  environment.systemPackages = with pkgs; [ git zsh "ripgrep@14.1.0" ];
  environment.sessionVariables.EDITOR = "nvim";
  environment.shellAliases.ll = "ls -l";
  users.users.chris = {
    isNormalUser = true;
    extraGroups = [ "wheel" ];
    shell = pkgs.zsh;
  };
  services.ssh = { enable = true; requires = [ "user:chris" ]; settings.Port = 22; };
  services.cups.enable = false;
  time.timeZone = "UTC";
}
"""


class TestDiffEngine:
    """Tests for DiffEngine.calculate()."""

    def test_install_missing_package(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": None}))

        plan = DiffEngine().calculate(desired, ObservedState())

        assert len(plan.actions) == 1
        action = plan.actions[0]
        assert action.action_type == ActionType.INSTALL
        assert action.key == "package:git"
        assert action.reason == {"ensure": {"observed": "absent", "desired": "present"}}

    def test_identical_state_only_noops(self):
        desired = build(WORKSTATION)
        observed = observed_state(*(
            ObservedResource(d.kind, d.name, d.comparable_state())
            for d in desired.declarations
            if d.ensure == Ensure.PRESENT
        ))

        plan = DiffEngine().calculate(desired, observed)

        assert len(plan.actions) == len(desired)
        assert all(a.action_type == ActionType.NOOP for a in plan.actions)
        assert plan.no_change

    def test_modify_changed_fields(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": "2.44.0"}))
        observed = observed_state(ObservedResource(ResourceKind.PACKAGE, "git", {"version": "2.43.0"}))

        plan = DiffEngine().calculate(desired, observed)

        action = plan.actions[0]
        assert action.action_type == ActionType.MODIFY
        assert action.reason == {"version": {"observed": "2.43.0", "desired": "2.44.0"}}
        assert action.observed == {"version": "2.43.0"}

    def test_unpinned_version_matches_any_installed(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": None}))
        observed = observed_state(ObservedResource(ResourceKind.PACKAGE, "git", {"version": "2.43.0"}))

        plan = DiffEngine().calculate(desired, observed)

        assert plan.actions[0].action_type == ActionType.NOOP

    def test_bool_does_not_match_int(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.SETTING, "a", {"value": True}))
        observed = observed_state(ObservedResource(ResourceKind.SETTING, "a", {"value": 1}))

        plan = DiffEngine().calculate(desired, observed)

        assert plan.actions[0].action_type == ActionType.MODIFY

    def test_service_config_change_is_modify(self):
        desired = build("{ services.nginx = { enable = true; settings.port = 8080; }; }")
        observed = observed_state(ObservedResource(
            ResourceKind.SERVICE, "nginx", {"active": True, "config_hash": "0000000000000000"},
        ))

        plan = DiffEngine().calculate(desired, observed)

        assert plan.actions[0].action_type == ActionType.MODIFY
        assert list(plan.actions[0].reason) == ["config_hash"]

    def test_absent_service_running_is_removed(self):
        desired = build("{ services.cups.enable = false; }")
        observed = observed_state(ObservedResource(ResourceKind.SERVICE, "cups", {"active": True}))

        plan = DiffEngine().calculate(desired, observed)

        assert plan.actions[0].action_type == ActionType.REMOVE
        assert plan.actions[0].key == "service:cups"

    def test_absent_service_stopped_is_noop(self):
        desired = build("{ services.cups.enable = false; }")
        observed = observed_state(ObservedResource(ResourceKind.SERVICE, "cups", {"active": False}))

        plan = DiffEngine().calculate(desired, observed)

        assert plan.actions[0].action_type == ActionType.NOOP

    def test_dependency_before_dependent(self):
        """The service is declared first but its user is applied first."""
        desired = build("""
        {
          services.ssh = { enable = true; requires = [ "user:chris" ]; };
          users.users.chris.isNormalUser = true;
        }
        """)

        plan = DiffEngine().calculate(desired, ObservedState())

        keys = [a.key for a in plan.actions]
        assert keys.index("user:chris") < keys.index("service:ssh")
        assert all(a.action_type == ActionType.INSTALL for a in plan.actions)

    def test_ties_broken_by_declaration_order(self):
        desired = desired_set(
            ResourceDeclaration(ResourceKind.PACKAGE, "c", {}),
            ResourceDeclaration(ResourceKind.PACKAGE, "a", {}),
            ResourceDeclaration(ResourceKind.PACKAGE, "b", {}),
            edges=[("package:b", "package:c")],
        )

        plan = DiffEngine().calculate(desired, ObservedState())

        assert [a.key for a in plan.actions] == ["package:a", "package:b", "package:c"]

    def test_plan_is_deterministic(self):
        desired = build(WORKSTATION)
        observed = observed_state(ObservedResource(ResourceKind.PACKAGE, "git", {"version": "2.43.0"}))

        first = DiffEngine().calculate(desired, observed).to_json()
        second = DiffEngine().calculate(build(WORKSTATION), observed).to_json()

        assert first == second

    def test_cycle_raises_plan_error(self):
        desired = build("""
        {
          services.a = { enable = true; requires = [ "service:b" ]; };
          services.b = { enable = true; requires = [ "service:a" ]; };
        }
        """)

        with pytest.raises(PlanError) as exc_info:
            DiffEngine().calculate(desired, ObservedState())

        assert exc_info.value.cycle == ["service:a", "service:b", "service:a"]

    def test_cycle_reported_without_unrelated_nodes(self):
        desired = desired_set(
            ResourceDeclaration(ResourceKind.PACKAGE, "free", {}),
            ResourceDeclaration(ResourceKind.SERVICE, "x", {"config": {}}),
            ResourceDeclaration(ResourceKind.SERVICE, "y", {"config": {}}),
            ResourceDeclaration(ResourceKind.SERVICE, "z", {"config": {}}),
            edges=[
                ("service:x", "service:y"),
                ("service:y", "service:z"),
                ("service:z", "service:y"),
            ],
        )

        with pytest.raises(PlanError) as exc_info:
            DiffEngine().calculate(desired, ObservedState())

        assert exc_info.value.cycle == ["service:y", "service:z", "service:y"]

    def test_probe_failed_kind_assumed_absent(self):
        desired = desired_set(
            ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": None}),
            ResourceDeclaration(ResourceKind.SERVICE, "sshd", {"config": {}}),
        )
        observed = ObservedState(errors={ResourceKind.SERVICE: ProbeError("service", "boom")})

        plan = DiffEngine().calculate(desired, observed)

        assert [a.action_type for a in plan.actions] == [ActionType.INSTALL, ActionType.INSTALL]
        assert plan.actions[1].reason["ensure"]["observed"] == "unknown"
        assert plan.probe_errors[0].kind == "service"


class TestUnmanagedResources:
    """Tests for removal of undeclared resources of exclusive kinds."""

    def test_unmanaged_removed_for_exclusive_kind(self):
        desired = desired_set(
            ResourceDeclaration(ResourceKind.ALIAS, "ll", {"command": "ls -l"}),
            exclusive=[ResourceKind.ALIAS],
        )
        observed = observed_state(
            ObservedResource(ResourceKind.ALIAS, "ll", {"command": "ls -l"}),
            ObservedResource(ResourceKind.ALIAS, "gs", {"command": "git status"}),
            complete=[ResourceKind.ALIAS],
        )

        plan = DiffEngine().calculate(desired, observed)

        assert [(a.action_type, a.key) for a in plan.actions] == [
            (ActionType.NOOP, "alias:ll"),
            (ActionType.REMOVE, "alias:gs"),
        ]
        removal = plan.actions[1]
        assert removal.reason == {"ensure": {"observed": "present", "desired": "unmanaged"}}
        assert removal.declaration.sources == ["reconcile.exclusive"]
        assert removal.observed == {"command": "git status"}

    def test_non_exclusive_kind_left_alone(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.ALIAS, "ll", {"command": "ls -l"}))
        observed = observed_state(
            ObservedResource(ResourceKind.ALIAS, "gs", {"command": "git status"}),
            complete=[ResourceKind.ALIAS],
        )

        plan = DiffEngine().calculate(desired, observed)

        assert plan.count(ActionType.REMOVE) == 0

    def test_incomplete_listing_removes_nothing(self):
        desired = desired_set(exclusive=[ResourceKind.ALIAS])
        observed = observed_state(ObservedResource(ResourceKind.ALIAS, "gs", {"command": "git status"}))

        plan = DiffEngine().calculate(desired, observed)

        assert plan.actions == []

    def test_inactive_service_not_removed(self):
        desired = desired_set(exclusive=[ResourceKind.SERVICE])
        observed = observed_state(
            ObservedResource(ResourceKind.SERVICE, "old", {"active": False}),
            complete=[ResourceKind.SERVICE],
        )

        assert DiffEngine().calculate(desired, observed).actions == []


class TestSummarizePlan:
    """Tests for summarize_plan()."""

    def test_no_changes(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": None}))
        observed = observed_state(ObservedResource(ResourceKind.PACKAGE, "git", {"version": "1"}))

        text = summarize_plan(DiffEngine().calculate(desired, observed))

        assert text == "No changes needed - current state matches desired state"

    def test_changes_listed(self):
        desired = desired_set(
            ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": None}),
            ResourceDeclaration(ResourceKind.ENV, "EDITOR", {"value": "nvim"}),
        )
        observed = observed_state(ObservedResource(ResourceKind.ENV, "EDITOR", {"value": "vim"}))

        text = summarize_plan(DiffEngine().calculate(desired, observed))

        assert "Changes to apply (2 total):" in text
        assert "  [+] install package:git" in text
        assert "  [~] modify env:EDITOR" in text
        assert "      value: 'vim' -> 'nvim'" in text

    def test_probe_warnings(self):
        desired = desired_set(ResourceDeclaration(ResourceKind.PACKAGE, "git", {"version": None}))
        observed = ObservedState(errors={ResourceKind.PACKAGE: ProbeError("package", "timed out after 1s")})

        text = summarize_plan(DiffEngine().calculate(desired, observed))

        assert text.startswith("Warning: probe for package failed: timed out after 1s")
