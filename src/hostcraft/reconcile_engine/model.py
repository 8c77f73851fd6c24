"""Desired-state model builder.

Lowers a validated attribute tree into typed resource declarations and the
dependency edges between them. Two sites declaring the same identity key
with different values is an error, never a silent overwrite.
"""
import logging
from typing import Any, Callable, Optional

from .errors import ConflictError, ValidationError
from .options import OptionSchema, default_schema
from .schema import (
    AttributeNode,
    DesiredStateSet,
    Ensure,
    ListNode,
    MappingNode,
    ResourceDeclaration,
    ResourceKind,
    Scalar,
    format_path,
    make_key,
    parse_key,
    to_python,
)
from .validator import FREEFORM, OPTION, iter_options

logger = logging.getLogger(__name__)

# Top-level keys that configure hostcraft itself rather than the host
META_KEYS = {"imports", "reconcile"}

# Service attributes that are not part of the service's own config
SERVICE_META = {"enable", "requires"}

# Program attributes consumed when lowering programs.<name>
PROGRAM_KEYS = {"enable", "package", "defaultEditor", "viAlias", "vimAlias"}

# Editor binaries for programs.<name>.defaultEditor / aliases
EDITOR_BINARIES = {
    "neovim": "nvim",
    "vim": "vim",
    "helix": "hx",
    "emacs": "emacs",
    "nano": "nano",
}

SERVICE_NAMESPACES = {"services", "virtualisation"}
ENV_OPTIONS = {("environment", "sessionVariables"), ("environment", "variables")}
ALIAS_OPTIONS = {("environment", "shellAliases"), ("programs", "zsh", "shellAliases")}


def normalize_package(ref: str) -> tuple[str, Optional[str]]:
    """Split a package reference into name and optional pinned version.

    "pkgs.zsh" -> ("zsh", None), "git@2.44.0" -> ("git", "2.44.0")
    """
    name = ref[len("pkgs."):] if ref.startswith("pkgs.") else ref
    name, sep, version = name.partition("@")
    return name, (version if sep and version else None)


def _env_text(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else ""
    return str(value)


class ModelBuilder:
    """Build a DesiredStateSet from a validated attribute tree."""

    def __init__(self, schema: Optional[OptionSchema] = None):
        self.schema = schema or default_schema()
        self._decls: dict[str, ResourceDeclaration] = {}
        self._implicit: list[tuple[str, str]] = []

    def build(self, tree: MappingNode) -> DesiredStateSet:
        """
        Lower a validated tree into resource declarations.

        Args:
            tree: Tree returned by ConfigValidator.validate()

        Returns:
            DesiredStateSet with declarations in declaration order

        Raises:
            ConflictError: If two sites disagree about one identity key
            ValidationError: If a `requires` entry is malformed or undeclared
        """
        self._decls = {}
        self._implicit = []
        handled: set[tuple[str, ...]] = set()

        for keys, node, definition, status in iter_options(tree, self.schema):
            if status not in (OPTION, FREEFORM):
                continue

            if definition is not None and definition.type == "packages":
                self._lower_packages(keys, node)
                continue

            if keys[0] in META_KEYS:
                continue

            if keys in ENV_OPTIONS:
                self._lower_env(keys, node)
                continue

            if keys in ALIAS_OPTIONS:
                self._lower_aliases(keys, node)
                continue

            namespace = self._namespace_handler(tree, keys)
            if namespace is not None:
                prefix, handler = namespace
                if prefix not in handled:
                    handled.add(prefix)
                    handler(prefix, tree.get_path(prefix))
                continue

            self._declare(
                ResourceDeclaration(
                    kind=ResourceKind.SETTING,
                    name=format_path(keys),
                    payload={"value": to_python(node)},
                ),
                format_path(keys),
            )

        desired = DesiredStateSet(
            declarations=sorted(self._decls.values(), key=lambda d: d.order),
            exclusive_kinds=self._exclusive_kinds(tree),
        )
        desired.edges = self._build_edges()

        logger.info(
            f"Modeled {len(desired)} resources with {len(desired.edges)} dependencies"
        )
        return desired

    # --- Namespace dispatch ---

    def _namespace_handler(
        self,
        tree: MappingNode,
        keys: tuple[str, ...],
    ) -> Optional[tuple[tuple[str, ...], Callable[[tuple[str, ...], Any], None]]]:
        if len(keys) >= 3 and keys[:2] == ("users", "users"):
            return keys[:3], self._lower_user

        if len(keys) >= 3 and keys[:2] == ("environment", "etc"):
            return keys[:3], self._lower_file

        if len(keys) >= 2 and keys[0] in SERVICE_NAMESPACES:
            node = tree.get_path(keys[:2])
            if isinstance(node, MappingNode) and "enable" in node:
                return keys[:2], self._lower_service

        if len(keys) == 3 and keys[0] == "programs" and keys[2] in PROGRAM_KEYS:
            node = tree.get_path(keys[:2])
            if isinstance(node, MappingNode) and "enable" in node:
                return keys[:2], self._lower_program

        return None

    # --- Lowering rules ---

    def _lower_packages(self, keys: tuple[str, ...], node: AttributeNode) -> None:
        site = format_path(keys)
        for item in node.items:
            name, version = normalize_package(item.value)
            self._declare(
                ResourceDeclaration(
                    kind=ResourceKind.PACKAGE,
                    name=name,
                    payload={"version": version},
                ),
                site,
            )

    def _lower_env(self, keys: tuple[str, ...], node: MappingNode) -> None:
        for name, value in node.entries.items():
            self._declare(
                ResourceDeclaration(
                    kind=ResourceKind.ENV,
                    name=name,
                    payload={"value": _env_text(value.value)},
                ),
                format_path(keys + (name,)),
            )

    def _lower_aliases(self, keys: tuple[str, ...], node: MappingNode) -> None:
        for name, value in node.entries.items():
            self._declare(
                ResourceDeclaration(
                    kind=ResourceKind.ALIAS,
                    name=name,
                    payload={"command": _env_text(value.value)},
                ),
                format_path(keys + (name,)),
            )

    def _lower_user(self, prefix: tuple[str, ...], node: MappingNode) -> None:
        name = prefix[2]
        spec = to_python(node)
        shell = spec.get("shell")
        shell_name = normalize_package(shell)[0] if shell else None

        decl = ResourceDeclaration(
            kind=ResourceKind.USER,
            name=name,
            payload={
                "description": spec.get("description"),
                "groups": sorted(spec.get("extraGroups") or []),
                "shell": shell_name,
                "is_normal_user": spec.get("isNormalUser"),
                "uid": spec.get("uid"),
                "home": spec.get("home"),
            },
        )
        self._declare(decl, format_path(prefix))
        if shell_name:
            self._implicit.append((make_key(ResourceKind.PACKAGE, shell_name), decl.key))

    def _lower_service(self, prefix: tuple[str, ...], node: MappingNode) -> None:
        name = prefix[1]
        site = format_path(prefix)
        enabled = node.get("enable")
        enabled = isinstance(enabled, Scalar) and enabled.value is True

        config = {k: to_python(v) for k, v in node.entries.items() if k not in SERVICE_META}
        requires = self._parse_requires(prefix, node.get("requires"))

        decl = ResourceDeclaration(
            kind=ResourceKind.SERVICE,
            name=name,
            payload={"config": config},
            ensure=Ensure.PRESENT if enabled else Ensure.ABSENT,
            requires=requires,
        )
        self._declare(decl, site)

        run_as = config.get("user")
        if isinstance(run_as, str):
            self._implicit.append((make_key(ResourceKind.USER, run_as), decl.key))
        package = config.get("package")
        if isinstance(package, str):
            pkg_name = normalize_package(package)[0]
            self._implicit.append((make_key(ResourceKind.PACKAGE, pkg_name), decl.key))

    def _lower_program(self, prefix: tuple[str, ...], node: MappingNode) -> None:
        name = prefix[1]
        site = format_path(prefix)
        spec = to_python(node)
        if spec.get("enable") is not True:
            return

        package = spec.get("package")
        pkg_name = normalize_package(package)[0] if isinstance(package, str) else name
        self._declare(
            ResourceDeclaration(
                kind=ResourceKind.PACKAGE,
                name=pkg_name,
                payload={"version": None},
            ),
            f"{site}.enable",
        )

        binary = EDITOR_BINARIES.get(name, name)
        if spec.get("defaultEditor") is True:
            for variable in ("EDITOR", "VISUAL"):
                self._declare(
                    ResourceDeclaration(
                        kind=ResourceKind.ENV,
                        name=variable,
                        payload={"value": binary},
                    ),
                    f"{site}.defaultEditor",
                )
        for option, alias in (("viAlias", "vi"), ("vimAlias", "vim")):
            if spec.get(option) is True:
                self._declare(
                    ResourceDeclaration(
                        kind=ResourceKind.ALIAS,
                        name=alias,
                        payload={"command": binary},
                    ),
                    f"{site}.{option}",
                )

    def _lower_file(self, prefix: tuple[str, ...], node: MappingNode) -> None:
        spec = to_python(node)
        if spec.get("text") is None:
            return
        mode = spec.get("mode")
        if isinstance(mode, str) and mode.isdigit():
            mode = mode.zfill(4)
        self._declare(
            ResourceDeclaration(
                kind=ResourceKind.FILE,
                name="/etc/" + prefix[2].lstrip("/"),
                payload={"content": spec["text"], "mode": mode},
            ),
            format_path(prefix),
        )

    # --- Helpers ---

    def _declare(self, decl: ResourceDeclaration, site: str) -> None:
        existing = self._decls.get(decl.key)
        if existing is None:
            decl.order = len(self._decls)
            decl.sources = [site]
            self._decls[decl.key] = decl
            return

        if not existing.same_desired_value(decl):
            raise ConflictError(
                decl.key,
                _declared_value(existing),
                _declared_value(decl),
                sites=existing.sources + [site],
            )

        if site not in existing.sources:
            existing.sources.append(site)
        for required in decl.requires:
            if required not in existing.requires:
                existing.requires.append(required)

    def _parse_requires(
        self,
        prefix: tuple[str, ...],
        node: Optional[AttributeNode],
    ) -> list[str]:
        if node is None:
            return []
        path = format_path(prefix + ("requires",))
        if not isinstance(node, ListNode):
            raise ValidationError(path, "list of identity keys", to_python(node))
        requires = []
        for item in node.items:
            try:
                parse_key(str(item.value))
            except ValueError:
                raise ValidationError(path, "identity key like 'user:name'", item.value)
            requires.append(str(item.value))
        return requires

    def _build_edges(self) -> list[tuple[str, str]]:
        edges: list[tuple[str, str]] = []

        for decl in sorted(self._decls.values(), key=lambda d: d.order):
            for required in decl.requires:
                if required not in self._decls:
                    raise ValidationError(
                        f"{decl.sources[0]}.requires",
                        "a declared resource",
                        required,
                    )
                if (required, decl.key) not in edges:
                    edges.append((required, decl.key))

        for before, after in self._implicit:
            if before in self._decls and (before, after) not in edges:
                edges.append((before, after))

        return edges

    def _exclusive_kinds(self, tree: MappingNode) -> set[ResourceKind]:
        node = tree.get_path(("reconcile", "exclusive"))
        if not isinstance(node, ListNode):
            return set()
        return {ResourceKind(item.value) for item in node.items}


def _declared_value(decl: ResourceDeclaration) -> Any:
    if decl.ensure == Ensure.ABSENT:
        return {"ensure": Ensure.ABSENT.value, **decl.payload}
    return decl.payload
