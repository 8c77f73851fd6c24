"""Tests for the desired-state model builder."""
import pytest

from hostcraft.reconcile_engine import (
    ConfigValidator,
    ConflictError,
    DeclarationParser,
    Ensure,
    ModelBuilder,
    ResourceKind,
    ValidationError,
)
from hostcraft.reconcile_engine.model import normalize_package
from hostcraft.reconcile_engine.schema import config_hash


def build(text: str):
    tree = DeclarationParser().parse(text, env={})
    result = ConfigValidator().validate(tree)
    assert result.valid, result.errors
    return ModelBuilder().build(result.tree)


class TestNormalizePackage:
    """Tests for normalize_package()."""

    def test_plain_name(self):
        assert normalize_package("git") == ("git", None)

    def test_pkgs_prefix(self):
        assert normalize_package("pkgs.zsh") == ("zsh", None)

    def test_pinned_version(self):
        assert normalize_package("git@2.44.0") == ("git", "2.44.0")


class TestModelBuilder:
    """Tests for ModelBuilder.build()."""

    def test_packages(self):
        desired = build('{ environment.systemPackages = with pkgs; [ git curl "ripgrep@14.1.0" ]; }')

        assert desired.keys() == ["package:git", "package:curl", "package:ripgrep"]
        assert desired.get("package:git").payload == {"version": None}
        assert desired.get("package:ripgrep").payload == {"version": "14.1.0"}
        assert desired.get("package:git").sources == ["environment.systemPackages"]

    def test_duplicate_identical_package_collapses(self):
        desired = build("""
        {
          environment.systemPackages = [ pkgs.git ];
          users.users.chris.packages = [ pkgs.git ];
        }
        """)

        packages = desired.by_kind(ResourceKind.PACKAGE)
        assert [p.name for p in packages] == ["git"]
        assert packages[0].sources == ["environment.systemPackages", "users.users.chris.packages"]

    def test_user_with_shell_dependency(self):
        desired = build("""
        {
          environment.systemPackages = [ pkgs.zsh ];
          users.users.chris = {
            isNormalUser = true;
            description = "Chris";
            extraGroups = [ "wheel" "audio" ];
            shell = pkgs.zsh;
          };
        }
        """)

        user = desired.get("user:chris")
        assert user.payload == {
            "description": "Chris",
            "groups": ["audio", "wheel"],
            "shell": "zsh",
            "is_normal_user": True,
            "uid": None,
            "home": None,
        }
        assert ("package:zsh", "user:chris") in desired.edges

    def test_shell_edge_only_for_declared_package(self):
        desired = build('{ users.users.chris.shell = "bash"; }')
        assert desired.edges == []

    def test_service_with_requires(self):
        desired = build("""
        {
          users.users.chris.isNormalUser = true;
          services.ssh = {
            enable = true;
            requires = [ "user:chris" ];
            settings.Port = 22;
          };
        }
        """)

        service = desired.get("service:ssh")
        assert service.ensure == Ensure.PRESENT
        assert service.requires == ["user:chris"]
        assert service.payload == {"config": {"settings": {"Port": 22}}}
        assert desired.edges == [("user:chris", "service:ssh")]

    def test_service_config_hash(self):
        desired = build('{ services.nginx = { enable = true; settings.port = 80; }; }')

        state = desired.get("service:nginx").comparable_state()
        assert state == {"active": True, "config_hash": config_hash({"settings": {"port": 80}})}

    def test_disabled_service_is_absent(self):
        desired = build("{ services.cups.enable = false; }")

        service = desired.get("service:cups")
        assert service.ensure == Ensure.ABSENT
        assert service.comparable_state() == {"active": False}

    def test_service_user_and_package_edges(self):
        desired = build("""
        {
          environment.systemPackages = [ pkgs.syncthing ];
          users.users.sync.isNormalUser = true;
          services.syncthing = { enable = true; user = "sync"; package = "pkgs.syncthing"; };
        }
        """)

        assert ("user:sync", "service:syncthing") in desired.edges
        assert ("package:syncthing", "service:syncthing") in desired.edges

    def test_virtualisation_is_a_service(self):
        desired = build("{ virtualisation.docker.enable = true; }")

        docker = desired.get("service:docker")
        assert docker is not None
        assert docker.payload == {"config": {"enableOnBoot": True}}

    def test_environment_and_aliases(self):
        desired = build("""
        {
          environment.sessionVariables = { EDITOR = "nvim"; PAGER = "less"; };
          environment.shellAliases.ll = "ls -l";
        }
        """)

        assert desired.get("env:EDITOR").payload == {"value": "nvim"}
        assert desired.get("env:PAGER").payload == {"value": "less"}
        assert desired.get("alias:ll").payload == {"command": "ls -l"}

    def test_program_lowering(self):
        desired = build("""
        {
          programs.neovim = {
            enable = true;
            defaultEditor = true;
            viAlias = true;
          };
        }
        """)

        assert desired.get("package:neovim").payload == {"version": None}
        assert desired.get("env:EDITOR").payload == {"value": "nvim"}
        assert desired.get("env:VISUAL").payload == {"value": "nvim"}
        assert desired.get("alias:vi").payload == {"command": "nvim"}
        assert desired.get("alias:vim") is None

    def test_disabled_program_declares_nothing(self):
        desired = build("{ programs.tmux.enable = false; }")
        assert len(desired) == 0

    def test_etc_file(self):
        desired = build('{ environment.etc."motd" = { text = "hello\\n"; mode = "644"; }; }')

        assert desired.get("file:/etc/motd").payload == {"content": "hello\n", "mode": "0644"}

    def test_other_options_become_settings(self):
        desired = build('{ networking.hostName = "box"; time.timeZone = "UTC"; }')

        assert desired.keys() == ["setting:networking.hostName", "setting:time.timeZone"]
        assert desired.get("setting:networking.hostName").payload == {"value": "box"}

    def test_declaration_order(self):
        desired = build("""
        {
          time.timeZone = "UTC";
          environment.systemPackages = [ pkgs.git ];
          environment.sessionVariables.A = "1";
        }
        """)

        assert [d.order for d in desired.declarations] == [0, 1, 2]
        assert desired.keys() == ["setting:time.timeZone", "package:git", "env:A"]

    def test_exclusive_kinds(self):
        desired = build('{ reconcile.exclusive = [ "alias" ]; environment.shellAliases.ll = "ls -l"; }')

        assert desired.exclusive_kinds == {ResourceKind.ALIAS}
        assert "setting:reconcile.exclusive" not in desired.keys()

    def test_kinds_in_enum_order(self):
        desired = build('{ environment.sessionVariables.A = "1"; environment.systemPackages = [ pkgs.git ]; }')
        assert desired.kinds() == [ResourceKind.PACKAGE, ResourceKind.ENV]


class TestModelErrors:
    """Tests for conflicts and broken dependencies."""

    def test_conflicting_declarations(self):
        with pytest.raises(ConflictError) as exc_info:
            build("""
            {
              environment.sessionVariables.EDITOR = "vim";
              programs.neovim = { enable = true; defaultEditor = true; };
            }
            """)

        error = exc_info.value
        assert error.key == "env:EDITOR"
        assert error.value_a == {"value": "vim"}
        assert error.value_b == {"value": "nvim"}
        assert error.sites == [
            "environment.sessionVariables.EDITOR",
            "programs.neovim.defaultEditor",
        ]

    def test_conflicting_package_versions(self):
        with pytest.raises(ConflictError):
            build("""
            {
              environment.systemPackages = [ "git@2.43.0" ];
              users.users.chris.packages = [ "git@2.44.0" ];
            }
            """)

    def test_requires_undeclared_resource(self):
        with pytest.raises(ValidationError) as exc_info:
            build('{ services.ssh = { enable = true; requires = [ "user:chris" ]; }; }')

        assert exc_info.value.path == "services.ssh.requires"
        assert exc_info.value.expected == "a declared resource"
        assert exc_info.value.found == "user:chris"

    def test_requires_malformed_key(self):
        with pytest.raises(ValidationError) as exc_info:
            build('{ services.ssh = { enable = true; requires = [ "chris" ]; }; }')
        assert exc_info.value.found == "chris"

    def test_requires_unknown_kind(self):
        with pytest.raises(ValidationError):
            build('{ services.ssh = { enable = true; requires = [ "gadget:x" ]; }; }')
