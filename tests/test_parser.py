"""Tests for the declaration parser."""
import pytest

from hostcraft.reconcile_engine import (
    ConflictError,
    DeclarationParser,
    ListNode,
    MappingNode,
    ParseError,
    Scalar,
    compute_checksum,
    merge_trees,
    render,
)
from hostcraft.reconcile_engine.schema import from_python, to_python


CONFIGURATION = """
{ config, pkgs, ... }:

{
  # Machine identity
  networking.hostName = "nixos";
  time.timeZone = "Europe/Amsterdam";

  /* Packages for every user */
  environment.systemPackages = with pkgs; [
    git
    curl
    neovim
  ];

  users.users.chris = {
    isNormalUser = true;
    description = "Chris";
    extraGroups = [ "wheel" "networkmanager" ];
    shell = pkgs.zsh;
  };

  services.openssh = {
    enable = true;
    ports = [ 22 2222 ];
  };
}
"""


class TestDeclarationParser:
    """Tests for DeclarationParser.parse()."""

    def test_parse_simple_attrset(self):
        """Parse scalars of every type."""
        tree = DeclarationParser().parse(
            '{ a = 1; b = "two"; c = true; d = null; e = 1.5; f = -3; }'
        )

        assert tree.get("a") == Scalar(1)
        assert tree.get("b") == Scalar("two")
        assert tree.get("c") == Scalar(True)
        assert tree.get("d") == Scalar(None)
        assert tree.get("e") == Scalar(1.5)
        assert tree.get("f") == Scalar(-3)

    def test_parse_full_configuration(self):
        """Header, comments, with-lists and nested sets."""
        tree = DeclarationParser().parse(CONFIGURATION)

        assert tree.get_path("networking.hostName") == Scalar("nixos")
        assert to_python(tree.get_path("environment.systemPackages")) == ["git", "curl", "neovim"]
        assert tree.get_path("users.users.chris.isNormalUser") == Scalar(True)
        assert tree.get_path("users.users.chris.shell") == Scalar("pkgs.zsh")
        assert to_python(tree.get_path("services.openssh.ports")) == [22, 2222]

    def test_dotted_keys_merge_into_one_mapping(self):
        tree = DeclarationParser().parse("{ a.b = 1; a.c = 2; a = { d = 3; }; }")

        assert to_python(tree) == {"a": {"b": 1, "c": 2, "d": 3}}

    def test_bare_package_references(self):
        """Identifiers without `with` keep their dotted name."""
        tree = DeclarationParser().parse("{ environment.systemPackages = [ pkgs.git pkgs.curl ]; }")

        assert tree.get_path("environment.systemPackages") == ListNode(
            [Scalar("pkgs.git"), Scalar("pkgs.curl")]
        )

    def test_rec_attrset(self):
        tree = DeclarationParser().parse("rec { a = 1; }")
        assert tree.get("a") == Scalar(1)

    def test_quoted_attribute_names(self):
        tree = DeclarationParser().parse('{ nix.settings."experimental-features" = [ "flakes" ]; }')
        assert to_python(tree.get_path(("nix", "settings", "experimental-features"))) == ["flakes"]

    def test_indented_string(self):
        """Common indentation is stripped from '' strings."""
        text = "{ text = ''\n    line one\n      line two\n  ''; }"
        tree = DeclarationParser().parse(text)

        assert tree.get("text") == Scalar("line one\n  line two\n")

    def test_string_escapes(self):
        tree = DeclarationParser().parse(r'{ a = "tab\there"; b = "quote\"d"; c = "\$HOME"; }')

        assert tree.get("a") == Scalar("tab\there")
        assert tree.get("b") == Scalar('quote"d')
        assert tree.get("c") == Scalar("$HOME")

    def test_indented_string_escaped_dollar(self):
        text = "{ text = ''\n    echo ''${HOME}\n      cd $HOME\n  ''; }"
        tree = DeclarationParser().parse(text, env={"HOME": "/root"})

        assert tree.get("text") == Scalar("echo ${HOME}\n  cd /root\n")

    def test_control_characters_are_literal(self):
        tree = DeclarationParser().parse('{ a = "x\x01y"; b = "\x00$HOME"; }', env={"HOME": "/root"})

        assert tree.get("a") == Scalar("x\x01y")
        assert tree.get("b") == Scalar("\x00/root")



class TestInterpolation:
    """Tests for $NAME and ${...} references."""

    def test_env_reference(self):
        tree = DeclarationParser().parse(
            '{ environment.sessionVariables.XDG_CONFIG_HOME = "$HOME/.config"; }',
            env={"HOME": "/home/chris"},
        )
        assert tree.get_path("environment.sessionVariables.XDG_CONFIG_HOME") == Scalar(
            "/home/chris/.config"
        )

    def test_braced_env_reference(self):
        tree = DeclarationParser().parse('{ a = "${USER}-box"; }', env={"USER": "chris"})
        assert tree.get("a") == Scalar("chris-box")

    def test_tree_reference(self):
        text = '{ networking.hostName = "box"; motd = "welcome to ${config.networking.hostName}"; }'
        tree = DeclarationParser().parse(text, env={})
        assert tree.get("motd") == Scalar("welcome to box")

    def test_chained_tree_references(self):
        text = '{ a = "x"; b = "${a}y"; c = "${b}z"; }'
        tree = DeclarationParser().parse(text, env={})
        assert tree.get("c") == Scalar("xyz")

    def test_env_takes_precedence_over_tree(self):
        tree = DeclarationParser().parse('{ name = "tree"; a = "$name"; }', env={"name": "env"})
        assert tree.get("a") == Scalar("env")

    def test_unresolved_reference_kept(self):
        tree = DeclarationParser().parse('{ a = "$NOT_SET/bin"; }', env={})
        assert tree.get("a") == Scalar("$NOT_SET/bin")

    def test_circular_reference(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse('{ a = "${b}"; b = "${a}"; }', env={})
        assert "circular reference" in exc_info.value.message

    def test_references_in_lists(self):
        tree = DeclarationParser().parse('{ l = [ "$HOME/a" "b" ]; }', env={"HOME": "/h"})
        assert to_python(tree.get("l")) == ["/h/a", "b"]


class TestParseErrors:
    """Tests for ParseError reporting."""

    def test_error_has_line_and_column(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse("{\n  a = ;\n}", source="configuration.nix")

        error = exc_info.value
        assert error.line == 2
        assert error.column == 7
        assert error.source == "configuration.nix"
        assert str(error).startswith("configuration.nix:2:7:")

    def test_duplicate_attribute(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse("{ a = 1;\n  a = 2; }")

        assert "attribute 'a' already defined" in exc_info.value.message
        assert exc_info.value.line == 2

    def test_duplicate_nested_attribute(self):
        with pytest.raises(ParseError):
            DeclarationParser().parse("{ a.b = 1; a = { b = 2; }; }")

    def test_missing_semicolon(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse("{ a = 1 }")
        assert "expected ';'" in exc_info.value.message

    def test_unterminated_string(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse('{ a = "open; }')
        assert "unterminated string" in exc_info.value.message

    def test_number_out_of_range(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse("{ a = 1e999; }")
        assert "number out of range" in exc_info.value.message


    def test_unterminated_comment(self):
        with pytest.raises(ParseError):
            DeclarationParser().parse("{ /* never closed }")

    def test_unsupported_construct(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse("{ a = let x = 1; in x; }")
        assert "unsupported construct 'let'" in exc_info.value.message

    def test_top_level_must_be_attrset(self):
        with pytest.raises(ParseError):
            DeclarationParser().parse("[ 1 2 ]")

    def test_trailing_tokens(self):
        with pytest.raises(ParseError):
            DeclarationParser().parse("{ a = 1; } { }")

    def test_to_dict(self):
        error = ParseError("bad", 3, 4, "x.nix")
        assert error.to_dict() == {
            "error": "ParseError",
            "message": "bad",
            "line": 3,
            "column": 4,
            "source": "x.nix",
        }


class TestRender:
    """Tests for render()."""

    def test_render_reparses_to_same_tree(self):
        parser = DeclarationParser()
        tree = parser.parse(CONFIGURATION)

        assert parser.parse(render(tree)) == tree

    def test_render_is_stable(self):
        parser = DeclarationParser()
        first = render(parser.parse(CONFIGURATION))
        second = render(parser.parse(first))

        assert first == second
        assert first.endswith("\n")

    def test_render_escapes_special_values(self):
        tree = from_python({
            "price": "costs $5",
            "quoted": 'say "hi"\nbye',
            "with": "keyword key",
            "dotted.key": True,
            "empty": {},
            "none": [],
            "nothing": None,
        })

        assert DeclarationParser().parse(render(tree), env={"5": "x"}) == tree

    def test_render_preserves_numeric_types(self):
        tree = from_python({"i": 1, "f": 1.0, "b": True})
        reparsed = DeclarationParser().parse(render(tree))

        assert reparsed.get("i") == Scalar(1)
        assert reparsed.get("f") == Scalar(1.0)
        assert reparsed.get("f") != Scalar(1)
        assert reparsed.get("b") == Scalar(True)

    def test_render_control_characters(self):
        tree = from_python({
            "start": "x\x01y",
            "nul": "\x00",
            "mixed": "\x01$HOME\x01",
            "bell": "ring\x07\r\n",
        })

        assert DeclarationParser().parse(render(tree), env={"HOME": "/root"}) == tree

    def test_render_rejects_non_finite_numbers(self):
        for value in (float("inf"), float("-inf"), float("nan")):
            with pytest.raises(ValueError):
                render(from_python({"x": value}))



class TestYaml:
    """Tests for YAML declarations."""

    def test_parse_yaml_dotted_keys(self):
        text = """
networking.hostName: box
environment:
  systemPackages: [git, curl]
  sessionVariables:
    XDG_CONFIG_HOME: "$HOME/.config"
"""
        tree = DeclarationParser().parse_yaml(text, env={"HOME": "/home/chris"})

        assert tree.get_path("networking.hostName") == Scalar("box")
        assert to_python(tree.get_path("environment.systemPackages")) == ["git", "curl"]
        assert tree.get_path("environment.sessionVariables.XDG_CONFIG_HOME") == Scalar(
            "/home/chris/.config"
        )

    def test_invalid_yaml(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse_yaml("a: [1, 2\nb: 3\n")
        assert exc_info.value.line > 0

    def test_yaml_top_level_must_be_mapping(self):
        with pytest.raises(ParseError):
            DeclarationParser().parse_yaml("- a\n- b\n")

    def test_empty_yaml(self):
        assert DeclarationParser().parse_yaml("") == MappingNode()

    def test_yaml_non_finite_number(self):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().parse_yaml("boot.timeout: .inf\n")
        assert "boot.timeout" in exc_info.value.message

    def test_yaml_escaped_dollar(self):
        tree = DeclarationParser().parse_yaml('a: "\\\\$HOME and $HOME"\n', env={"HOME": "/root"})
        assert tree.get("a") == Scalar("$HOME and /root")



class TestLoadFile:
    """Tests for load_file() and imports."""

    def test_load_with_import(self, tmp_path):
        (tmp_path / "hardware.nix").write_text(
            '{ boot.loader.systemd-boot.enable = true; environment.systemPackages = [ "curl" ]; }'
        )
        main = tmp_path / "configuration.nix"
        main.write_text(
            '{ imports = [ ./hardware.nix ]; environment.systemPackages = [ "git" ]; }'
        )

        tree = DeclarationParser().load_file(main, env={})

        assert "imports" not in tree
        assert tree.get_path("boot.loader.systemd-boot.enable") == Scalar(True)
        assert to_python(tree.get_path("environment.systemPackages")) == ["git", "curl"]

    def test_directory_import_uses_default_nix(self, tmp_path):
        module = tmp_path / "desktop"
        module.mkdir()
        (module / "default.nix").write_text('{ services.xserver.enable = true; }')
        main = tmp_path / "configuration.nix"
        main.write_text("{ imports = [ ./desktop ]; }")

        tree = DeclarationParser().load_file(main, env={})

        assert tree.get_path("services.xserver.enable") == Scalar(True)

    def test_import_cycle_is_skipped(self, tmp_path):
        (tmp_path / "a.nix").write_text('{ imports = [ ./b.nix ]; a = 1; }')
        (tmp_path / "b.nix").write_text('{ imports = [ ./a.nix ]; b = 2; }')

        tree = DeclarationParser().load_file(tmp_path / "a.nix", env={})

        assert to_python(tree) == {"a": 1, "b": 2}

    def test_import_references_resolve_after_merge(self, tmp_path):
        (tmp_path / "host.nix").write_text('{ networking.hostName = "box"; }')
        main = tmp_path / "configuration.nix"
        main.write_text(
            '{ imports = [ ./host.nix ]; motd = "on ${config.networking.hostName}"; }'
        )

        tree = DeclarationParser().load_file(main, env={})

        assert tree.get("motd") == Scalar("on box")

    def test_conflicting_import(self, tmp_path):
        (tmp_path / "host.nix").write_text('{ networking.hostName = "other"; }')
        main = tmp_path / "configuration.nix"
        main.write_text('{ imports = [ ./host.nix ]; networking.hostName = "box"; }')

        with pytest.raises(ConflictError) as exc_info:
            DeclarationParser().load_file(main, env={})
        assert exc_info.value.key == "networking.hostName"

    def test_missing_import(self, tmp_path):
        main = tmp_path / "configuration.nix"
        main.write_text("{ imports = [ ./nope.nix ]; }")

        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().load_file(main, env={})
        assert "imported file not found" in exc_info.value.message

    def test_missing_file(self, tmp_path):
        with pytest.raises(ParseError) as exc_info:
            DeclarationParser().load_file(tmp_path / "missing.nix")
        assert "file not found" in exc_info.value.message

    def test_imports_not_followed(self, tmp_path):
        main = tmp_path / "configuration.nix"
        main.write_text("{ imports = [ ./nope.nix ]; }")

        tree = DeclarationParser().load_file(main, env={}, follow_imports=False)

        assert to_python(tree.get("imports")) == ["./nope.nix"]

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / "host.yaml"
        path.write_text("networking.hostName: box\n")

        tree = DeclarationParser().load_file(path, env={})

        assert tree.get_path("networking.hostName") == Scalar("box")


class TestMergeTrees:
    """Tests for merge_trees()."""

    def test_merge_disjoint_and_lists(self):
        left = from_python({"a": {"x": 1}, "l": [1]})
        right = from_python({"a": {"y": 2}, "l": [2]})

        assert to_python(merge_trees(left, right)) == {"a": {"x": 1, "y": 2}, "l": [1, 2]}

    def test_equal_scalars_collapse(self):
        merged = merge_trees(from_python({"a": "same"}), from_python({"a": "same"}))
        assert to_python(merged) == {"a": "same"}

    def test_differing_scalars_conflict(self):
        with pytest.raises(ConflictError) as exc_info:
            merge_trees(from_python({"a": {"b": 1}}), from_python({"a": {"b": 2}}))

        assert exc_info.value.key == "a.b"
        assert exc_info.value.value_a == 1
        assert exc_info.value.value_b == 2

    def test_type_strict_conflict(self):
        with pytest.raises(ConflictError):
            merge_trees(from_python({"a": True}), from_python({"a": 1}))


class TestChecksum:
    """Tests for compute_checksum()."""

    def test_checksum_is_stable(self):
        parser = DeclarationParser()
        first = compute_checksum(parser.parse("{ a = 1; b = 2; }"))
        second = compute_checksum(parser.parse("{ b = 2; a = 1; }"))

        assert first == second
        assert first.startswith("sha256:")
        assert len(first) == len("sha256:") + 16

    def test_checksum_changes_with_content(self):
        parser = DeclarationParser()
        assert compute_checksum(parser.parse("{ a = 1; }")) != compute_checksum(parser.parse("{ a = 2; }"))
