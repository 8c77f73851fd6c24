"""Schema validation for declaration trees.

Catches misconfiguration before anything touches the host: unknown keys,
wrong value types, disallowed values. Deprecated options are moved to their
replacement with a warning.
"""
import copy
import logging
from typing import Iterator, Optional

from .errors import ValidationError
from .options import OptionDefinition, OptionSchema, default_schema, iter_matching_parents
from .schema import (
    AttributeNode,
    MappingNode,
    ValidationResult,
    format_path,
    from_python,
    split_path,
    to_python,
)

logger = logging.getLogger(__name__)

# Walk statuses
OPTION = "option"
FREEFORM = "freeform"
UNKNOWN = "unknown"
NOT_MAPPING = "not_mapping"


def iter_options(
    tree: MappingNode,
    schema: OptionSchema,
    prefix: tuple[str, ...] = (),
) -> Iterator[tuple[tuple[str, ...], AttributeNode, Optional[OptionDefinition], str]]:
    """
    Walk a tree guided by the schema.

    Yields (keys, node, definition, status) for every option value,
    free-form subtree, unknown key and malformed namespace.
    """
    for key, child in tree.entries.items():
        keys = prefix + (key,)

        definition = schema.find(keys)
        if definition is not None:
            yield keys, child, definition, OPTION
            continue

        if schema.is_namespace(keys):
            if isinstance(child, MappingNode):
                yield from iter_options(child, schema, keys)
            else:
                yield keys, child, None, NOT_MAPPING
            continue

        if schema.is_freeform(keys):
            yield keys, child, None, FREEFORM
            continue

        yield keys, child, None, UNKNOWN


class ConfigValidator:
    """Validate an attribute tree against an option schema."""

    def __init__(self, schema: Optional[OptionSchema] = None):
        """
        Initialize validator.

        Args:
            schema: Option schema (defaults to the built-in workstation schema)
        """
        self.schema = schema or default_schema()

    def validate(self, tree: MappingNode) -> ValidationResult:
        """
        Validate a declaration tree.

        Performs:
        - Deprecated option remapping (warning)
        - Unknown key detection (error)
        - Type and allowed-value checks (error)
        - Default application for absent options

        The input tree is not modified; the validated tree is returned on
        the result.

        Args:
            tree: Parsed attribute tree

        Returns:
            ValidationResult with valid flag, errors, warnings and tree
        """
        errors: list[ValidationError] = []
        warnings: list[str] = []
        working = copy.deepcopy(tree)

        self._remap_deprecated(working, errors, warnings)

        for keys, node, definition, status in iter_options(working, self.schema):
            path = format_path(keys)
            if status == OPTION:
                expected = definition.check(node)
                if expected:
                    errors.append(ValidationError(path, expected, to_python(node)))
            elif status == NOT_MAPPING:
                errors.append(ValidationError(path, "attribute set", to_python(node)))
            elif status == UNKNOWN:
                errors.append(ValidationError(path, "a known option", to_python(node)))

        if errors:
            for error in errors:
                logger.debug(f"Validation error: {error}")
            return ValidationResult(valid=False, errors=errors, warnings=warnings)

        self._apply_defaults(working)

        return ValidationResult(
            valid=True,
            errors=[],
            warnings=warnings,
            tree=working,
        )

    def _remap_deprecated(
        self,
        tree: MappingNode,
        errors: list[ValidationError],
        warnings: list[str],
    ) -> None:
        """Move deprecated options to their replacement path."""
        for definition in self.schema.deprecated():
            parent_pattern = definition.keys[:-1]
            last = definition.keys[-1]

            for parent_keys, parent in list(iter_matching_parents(tree, parent_pattern)):
                if last not in parent.entries:
                    continue

                old_keys = parent_keys + (last,)
                new_keys = _substitute(split_path(definition.deprecated_by), parent_keys)
                old_path = format_path(old_keys)
                new_path = format_path(new_keys)
                value = parent.entries.pop(last)

                warnings.append(f"{old_path} is deprecated, use {new_path}")
                logger.warning(f"Deprecated option {old_path} mapped to {new_path}")

                existing = tree.get_path(new_keys)
                if existing is not None:
                    if existing != value:
                        errors.append(ValidationError(
                            new_path,
                            f"{to_python(value)!r} (from deprecated {old_path})",
                            to_python(existing),
                        ))
                    continue

                target = tree
                for depth, key in enumerate(new_keys[:-1]):
                    child = target.entries.get(key)
                    if child is None:
                        child = MappingNode()
                        target.entries[key] = child
                    elif not isinstance(child, MappingNode):
                        errors.append(ValidationError(
                            format_path(new_keys[:depth + 1]),
                            "attribute set",
                            to_python(child),
                        ))
                        break
                    target = child
                else:
                    target.entries[new_keys[-1]] = value

    def _apply_defaults(self, tree: MappingNode) -> None:
        """Fill in option defaults where the option's parent exists."""
        for definition in self.schema.defaults():
            parent_pattern = definition.keys[:-1]
            last = definition.keys[-1]
            if not parent_pattern:
                continue
            for _, parent in iter_matching_parents(tree, parent_pattern):
                if last not in parent.entries:
                    parent.entries[last] = from_python(copy.deepcopy(definition.default))


def _substitute(pattern: tuple[str, ...], concrete: tuple[str, ...]) -> tuple[str, ...]:
    """Fill '*' segments of a replacement path from the matched path."""
    result = []
    for index, segment in enumerate(pattern):
        if segment == "*" and index < len(concrete):
            result.append(concrete[index])
        else:
            result.append(segment)
    return tuple(result)
