"""Option definitions used to validate declaration trees.

An option is addressed by a dotted path pattern. A `*` segment matches any
single attribute name (e.g. a user or service name); a trailing `**` marks a
free-form subtree whose contents are not checked.
"""
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional, Union

import yaml

from .schema import (
    AttributeNode,
    ListNode,
    MappingNode,
    ResourceKind,
    Scalar,
    split_path,
)

logger = logging.getLogger(__name__)


class _NoDefault:
    def __repr__(self) -> str:
        return "NO_DEFAULT"


NO_DEFAULT: Any = _NoDefault()

OPTION_TYPES = {
    "bool", "int", "str", "enum", "scalar", "list", "str_list",
    "packages", "attrs", "str_attrs", "any",
}


@dataclass
class OptionDefinition:
    """Definition of a single declarable option."""
    path: str
    type: str = "any"
    default: Any = NO_DEFAULT
    allowed: Optional[list[Any]] = None
    deprecated_by: Optional[str] = None
    description: str = ""
    keys: tuple[str, ...] = field(init=False)

    def __post_init__(self):
        if self.type not in OPTION_TYPES:
            raise ValueError(f"Unknown option type '{self.type}' for {self.path}")
        self.keys = split_path(self.path)

    @property
    def has_default(self) -> bool:
        return self.default is not NO_DEFAULT

    @property
    def freeform(self) -> bool:
        return bool(self.keys) and self.keys[-1] == "**"

    @property
    def specificity(self) -> int:
        return sum(1 for k in self.keys if k not in ("*", "**"))

    def matches(self, keys: tuple[str, ...]) -> bool:
        """Exact match of a concrete path against this pattern."""
        if self.freeform:
            prefix = self.keys[:-1]
            return len(keys) >= len(prefix) and _segments_match(prefix, keys[:len(prefix)])
        return len(keys) == len(self.keys) and _segments_match(self.keys, keys)

    def extends(self, keys: tuple[str, ...]) -> bool:
        """True if keys is a strict prefix of this pattern."""
        pattern = self.keys[:-1] if self.freeform else self.keys
        if len(keys) >= len(pattern):
            return False
        return _segments_match(pattern[:len(keys)], keys)

    def check(self, node: AttributeNode) -> Optional[str]:
        """Return the expected-type description if node does not conform."""
        expected = _check_type(self.type, node)
        if expected:
            return expected
        if self.allowed is not None:
            values = (
                [i.value for i in node.items if isinstance(i, Scalar)]
                if isinstance(node, ListNode)
                else [node.value] if isinstance(node, Scalar) else []
            )
            for value in values:
                if value not in self.allowed:
                    return "one of " + ", ".join(repr(a) for a in self.allowed)
        return None


def _segments_match(pattern: tuple[str, ...], keys: tuple[str, ...]) -> bool:
    return all(p == "*" or p == k for p, k in zip(pattern, keys))


def _check_type(option_type: str, node: AttributeNode) -> Optional[str]:
    if option_type == "any":
        return None
    if option_type == "bool":
        ok = isinstance(node, Scalar) and isinstance(node.value, bool)
        return None if ok else "boolean"
    if option_type == "int":
        ok = (
            isinstance(node, Scalar)
            and isinstance(node.value, int)
            and not isinstance(node.value, bool)
        )
        return None if ok else "integer"
    if option_type in ("str", "enum"):
        ok = isinstance(node, Scalar) and isinstance(node.value, str)
        return None if ok else "string"
    if option_type == "scalar":
        return None if isinstance(node, Scalar) else "scalar"
    if option_type == "list":
        return None if isinstance(node, ListNode) else "list"
    if option_type in ("str_list", "packages"):
        ok = isinstance(node, ListNode) and all(
            isinstance(i, Scalar) and isinstance(i.value, str) for i in node.items
        )
        return None if ok else "list of strings"
    if option_type == "attrs":
        return None if isinstance(node, MappingNode) else "attribute set"
    if option_type == "str_attrs":
        ok = isinstance(node, MappingNode) and all(
            isinstance(v, Scalar) and v.value is not None
            and not isinstance(v.value, float)
            for v in node.entries.values()
        )
        return None if ok else "attribute set of strings"
    return None


class OptionSchema:
    """Collection of option definitions with path lookup."""

    def __init__(self, definitions: Optional[list[OptionDefinition]] = None):
        self.definitions: list[OptionDefinition] = list(definitions or [])

    def add(self, definition: OptionDefinition) -> None:
        self.definitions.append(definition)

    def find(self, keys: Union[str, tuple[str, ...]]) -> Optional[OptionDefinition]:
        """Most specific non-free-form option matching a concrete path."""
        keys = split_path(keys) if isinstance(keys, str) else keys
        candidates = [d for d in self.definitions if not d.freeform and d.matches(keys)]
        if not candidates:
            return None
        return max(candidates, key=lambda d: d.specificity)

    def is_namespace(self, keys: tuple[str, ...]) -> bool:
        return any(d.extends(keys) for d in self.definitions)

    def is_freeform(self, keys: tuple[str, ...]) -> bool:
        return any(d.freeform and d.matches(keys) for d in self.definitions)

    def defaults(self) -> Iterator[OptionDefinition]:
        for definition in self.definitions:
            if definition.has_default and not definition.freeform:
                yield definition

    def deprecated(self) -> Iterator[OptionDefinition]:
        for definition in self.definitions:
            if definition.deprecated_by:
                yield definition

    def extend_from_yaml(self, path: Union[str, Path]) -> None:
        """
        Load extra option definitions from a YAML file:

        ```yaml
        options:
          services.myapp.port: {type: int, default: 8080}
          programs.foo.theme: {type: enum, allowed: [dark, light]}
        ```
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        for option_path, spec in (data.get("options") or {}).items():
            spec = spec or {}
            self.add(OptionDefinition(
                path=option_path,
                type=spec.get("type", "any"),
                default=spec.get("default", NO_DEFAULT),
                allowed=spec.get("allowed"),
                deprecated_by=spec.get("deprecated_by"),
                description=spec.get("description", ""),
            ))
        logger.debug(f"Loaded option definitions from {path}")

    def __len__(self) -> int:
        return len(self.definitions)


def iter_matching_parents(
    tree: MappingNode,
    pattern: tuple[str, ...],
) -> Iterator[tuple[tuple[str, ...], MappingNode]]:
    """Yield concrete (path, mapping) pairs in tree matching a key pattern."""
    def walk(node: MappingNode, index: int, path: tuple[str, ...]):
        if index == len(pattern):
            yield path, node
            return
        segment = pattern[index]
        keys = list(node.entries) if segment == "*" else [segment]
        for key in keys:
            child = node.entries.get(key)
            if isinstance(child, MappingNode):
                yield from walk(child, index + 1, path + (key,))

    yield from walk(tree, 0, ())


def _opt(path: str, type: str = "any", default: Any = NO_DEFAULT, **kwargs) -> OptionDefinition:
    return OptionDefinition(path=path, type=type, default=default, **kwargs)


SSH_ROOT_LOGIN = ["yes", "no", "prohibit-password", "without-password", "forced-commands-only"]


def default_schema() -> OptionSchema:
    """Built-in schema for a personal workstation declaration."""
    return OptionSchema([
        # Meta
        _opt("imports", "list", description="Declaration files merged into this one"),
        _opt("reconcile.exclusive", "str_list", default=[],
             allowed=[k.value for k in ResourceKind],
             description="Resource kinds whose unmanaged entries are removed"),

        # Boot
        _opt("boot.loader.systemd-boot.enable", "bool", default=False),
        _opt("boot.loader.systemd-boot.configurationLimit", "int"),
        _opt("boot.loader.efi.canTouchEfiVariables", "bool", default=False),
        _opt("boot.loader.efi.efiSysMountPoint", "str"),
        _opt("boot.loader.grub.enable", "bool"),
        _opt("boot.loader.grub.device", "str"),
        _opt("boot.loader.grub.efiSupport", "bool"),
        _opt("boot.loader.timeout", "int"),
        _opt("boot.kernelPackages", "str"),
        _opt("boot.kernelParams", "str_list"),
        _opt("boot.kernelModules", "str_list"),
        _opt("boot.extraModulePackages", "list"),
        _opt("boot.supportedFilesystems", "list"),
        _opt("boot.initrd.**"),

        # Hardware (usually from hardware-configuration.nix)
        _opt("fileSystems.**"),
        _opt("swapDevices", "list"),
        _opt("powerManagement.**"),
        _opt("hardware.cpu.**"),
        _opt("hardware.graphics.**"),
        _opt("hardware.opengl.**"),
        _opt("hardware.bluetooth.**"),
        _opt("hardware.enableRedistributableFirmware", "bool"),
        _opt("hardware.pulseaudio.enable", "bool", deprecated_by="services.pulseaudio.enable"),

        # Networking
        _opt("networking.hostName", "str"),
        _opt("networking.domain", "str"),
        _opt("networking.networkmanager.enable", "bool", default=False),
        _opt("networking.useDHCP", "bool"),
        _opt("networking.interfaces.**"),
        _opt("networking.wireless.enable", "bool"),
        _opt("networking.firewall.enable", "bool", default=True),
        _opt("networking.firewall.allowedTCPPorts", "list"),
        _opt("networking.firewall.allowedUDPPorts", "list"),

        # Locale and time
        _opt("time.timeZone", "str"),
        _opt("i18n.defaultLocale", "str"),
        _opt("i18n.extraLocaleSettings", "str_attrs"),
        _opt("console.keyMap", "str"),
        _opt("console.font", "str"),

        # Users
        _opt("users.users.*.isNormalUser", "bool", default=False),
        _opt("users.users.*.isSystemUser", "bool"),
        _opt("users.users.*.description", "str", default=""),
        _opt("users.users.*.extraGroups", "str_list", default=[]),
        _opt("users.users.*.shell", "str"),
        _opt("users.users.*.home", "str"),
        _opt("users.users.*.uid", "int"),
        _opt("users.users.*.group", "str"),
        _opt("users.users.*.initialPassword", "str"),
        _opt("users.users.*.hashedPassword", "str"),
        _opt("users.users.*.openssh.authorizedKeys.keys", "str_list"),
        _opt("users.users.*.packages", "packages"),
        _opt("users.groups.*.gid", "int"),
        _opt("users.groups.*.members", "str_list"),
        _opt("users.defaultUserShell", "str"),
        _opt("users.mutableUsers", "bool"),

        # Display server
        _opt("services.xserver.enable", "bool", default=False),
        _opt("services.xserver.xkb.layout", "str"),
        _opt("services.xserver.xkb.variant", "str"),
        _opt("services.xserver.xkb.options", "str"),
        _opt("services.xserver.layout", "str", deprecated_by="services.xserver.xkb.layout"),
        _opt("services.xserver.xkbVariant", "str", deprecated_by="services.xserver.xkb.variant"),
        _opt("services.xserver.xkbOptions", "str", deprecated_by="services.xserver.xkb.options"),
        _opt("services.xserver.videoDrivers", "str_list"),
        _opt("services.xserver.windowManager.*.enable", "bool"),
        _opt("services.xserver.windowManager.*.extraPackages", "packages"),
        _opt("services.xserver.windowManager.*.package", "str"),
        _opt("services.xserver.desktopManager.*.enable", "bool"),
        _opt("services.xserver.displayManager.*.enable", "bool"),
        _opt("services.displayManager.**"),
        _opt("services.libinput.enable", "bool"),

        # Audio
        _opt("security.rtkit.enable", "bool"),
        _opt("services.pipewire.alsa.enable", "bool"),
        _opt("services.pipewire.alsa.support32Bit", "bool"),
        _opt("services.pipewire.pulse.enable", "bool"),
        _opt("services.pipewire.jack.enable", "bool"),
        _opt("services.pipewire.wireplumber.enable", "bool"),

        # Fonts
        _opt("fonts.packages", "packages", default=[]),
        _opt("fonts.fonts", "packages", deprecated_by="fonts.packages"),
        _opt("fonts.enableDefaultPackages", "bool"),
        _opt("fonts.fontconfig.enable", "bool"),
        _opt("fonts.fontconfig.defaultFonts.monospace", "str_list"),
        _opt("fonts.fontconfig.defaultFonts.sansSerif", "str_list"),
        _opt("fonts.fontconfig.defaultFonts.serif", "str_list"),
        _opt("fonts.fontconfig.defaultFonts.emoji", "str_list"),

        # Programs
        _opt("programs.*.enable", "bool"),
        _opt("programs.*.package", "str"),
        _opt("programs.zsh.enableCompletion", "bool"),
        _opt("programs.zsh.autosuggestions.enable", "bool"),
        _opt("programs.zsh.syntaxHighlighting.enable", "bool"),
        _opt("programs.zsh.histSize", "int"),
        _opt("programs.zsh.shellAliases", "str_attrs"),
        _opt("programs.zsh.ohMyZsh.**"),
        _opt("programs.neovim.defaultEditor", "bool", default=False),
        _opt("programs.neovim.viAlias", "bool", default=False),
        _opt("programs.neovim.vimAlias", "bool", default=False),
        _opt("programs.neovim.configure.**"),
        _opt("programs.git.config.**"),
        _opt("programs.tmux.clock24", "bool"),
        _opt("programs.tmux.keyMode", "enum", allowed=["emacs", "vi"]),
        _opt("programs.tmux.terminal", "str"),
        _opt("programs.tmux.extraConfig", "str"),
        _opt("programs.gnupg.agent.enable", "bool"),
        _opt("programs.gnupg.agent.enableSSHSupport", "bool"),

        # Environment
        _opt("environment.systemPackages", "packages", default=[]),
        _opt("environment.sessionVariables", "str_attrs"),
        _opt("environment.variables", "str_attrs"),
        _opt("environment.shellAliases", "str_attrs"),
        _opt("environment.etc.*.text", "str"),
        _opt("environment.etc.*.mode", "str"),

        # Virtualisation
        _opt("virtualisation.*.enable", "bool"),
        _opt("virtualisation.*.requires", "str_list"),
        _opt("virtualisation.docker.enableOnBoot", "bool", default=True),
        _opt("virtualisation.docker.rootless.**"),
        _opt("virtualisation.docker.autoPrune.**"),

        # Services
        _opt("services.*.enable", "bool"),
        _opt("services.*.requires", "str_list"),
        _opt("services.*.user", "str"),
        _opt("services.*.package", "str"),
        _opt("services.*.extraConfig", "str"),
        _opt("services.*.settings.**"),
        _opt("services.openssh.ports", "list"),
        _opt("services.openssh.settings.PasswordAuthentication", "bool", default=True),
        _opt("services.openssh.settings.KbdInteractiveAuthentication", "bool"),
        _opt("services.openssh.settings.X11Forwarding", "bool"),
        _opt("services.openssh.settings.PermitRootLogin", "enum",
             default="prohibit-password", allowed=SSH_ROOT_LOGIN),
        _opt("services.openssh.passwordAuthentication", "bool",
             deprecated_by="services.openssh.settings.PasswordAuthentication"),
        _opt("services.openssh.permitRootLogin", "enum", allowed=SSH_ROOT_LOGIN,
             deprecated_by="services.openssh.settings.PermitRootLogin"),
        _opt("services.printing.drivers", "packages"),
        _opt("services.avahi.nssmdns4", "bool"),
        _opt("services.pulseaudio.enable", "bool"),

        # Security
        _opt("security.sudo.enable", "bool"),
        _opt("security.sudo.wheelNeedsPassword", "bool", default=True),
        _opt("security.polkit.enable", "bool"),

        # Nix
        _opt("nixpkgs.config.allowUnfree", "bool", default=False),
        _opt("nixpkgs.hostPlatform", "str"),
        _opt("nix.settings.experimental-features", "str_list"),
        _opt("nix.settings.auto-optimise-store", "bool"),
        _opt("nix.settings.trusted-users", "str_list"),
        _opt("nix.settings.substituters", "str_list"),
        _opt("nix.gc.automatic", "bool", default=False),
        _opt("nix.gc.dates", "str"),
        _opt("nix.gc.options", "str"),
        _opt("nix.optimise.automatic", "bool"),

        # System
        _opt("system.stateVersion", "str"),
        _opt("system.autoUpgrade.enable", "bool"),
        _opt("system.autoUpgrade.allowReboot", "bool"),
    ])
