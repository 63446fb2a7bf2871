"""Rule-class metadata.

A rule class describes which attributes a rule accepts and of what type.
The RuleClassProvider is the registry both loaders are configured with so
that a BUILD file is checked against the same set of rules either way.
"""

from dataclasses import dataclass, field
from typing import Any, Iterator


class RuleError(ValueError):
    """Raised when rule attributes don't match the rule class."""

    pass


ATTRIBUTE_TYPES = {
    "string",
    "bool",
    "int",
    "label",
    "label_list",
    "string_list",
    "output_list",
    "string_dict",
}

# Attributes whose values are label strings
LABEL_TYPES = {"label", "label_list"}


@dataclass(frozen=True)
class Attribute:
    """A single attribute of a rule class."""

    name: str
    type: str
    mandatory: bool = False
    default: Any = None

    def __post_init__(self):
        if self.type not in ATTRIBUTE_TYPES:
            raise ValueError(f"Unknown attribute type for {self.name}: {self.type}")

    def default_value(self) -> Any:
        if self.default is not None:
            return self.default
        return {
            "string": "",
            "bool": False,
            "int": 0,
            "label": None,
            "label_list": [],
            "string_list": [],
            "output_list": [],
            "string_dict": {},
        }[self.type]

    def check(self, value: Any) -> Any:
        """Check a value against the attribute type and return a normalized copy."""
        match self.type:
            case "string" | "label":
                if not isinstance(value, str):
                    raise RuleError(f"attribute '{self.name}' expects a string, got {type(value).__name__}")
                return value
            case "bool":
                if not isinstance(value, (bool, int)):
                    raise RuleError(f"attribute '{self.name}' expects a bool, got {type(value).__name__}")
                return bool(value)
            case "int":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise RuleError(f"attribute '{self.name}' expects an int, got {type(value).__name__}")
                return value
            case "label_list" | "string_list" | "output_list":
                if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                    raise RuleError(f"attribute '{self.name}' expects a list of strings")
                return list(value)
            case "string_dict":
                if not isinstance(value, dict) or not all(
                    isinstance(k, str) and isinstance(v, str) for k, v in value.items()
                ):
                    raise RuleError(f"attribute '{self.name}' expects a dict of strings")
                return dict(value)
        raise RuleError(f"unsupported attribute type: {self.type}")


COMMON_ATTRIBUTES = (
    Attribute("name", "string", mandatory=True),
    Attribute("visibility", "label_list"),
    Attribute("tags", "string_list"),
    Attribute("testonly", "bool"),
)


@dataclass(frozen=True)
class RuleClass:
    """A named kind of rule and its attribute schema."""

    name: str
    attributes: tuple[Attribute, ...] = ()
    _by_name: dict[str, Attribute] = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        by_name = {a.name: a for a in COMMON_ATTRIBUTES}
        for attr in self.attributes:
            by_name[attr.name] = attr
        object.__setattr__(self, "_by_name", by_name)

    def attribute(self, name: str) -> Attribute:
        if name not in self._by_name:
            raise KeyError(f"{self.name} has no attribute '{name}'")
        return self._by_name[name]

    @property
    def attribute_names(self) -> list[str]:
        return list(self._by_name)

    def check_attributes(self, values: dict[str, Any]) -> dict[str, Any]:
        """Validate rule arguments and fill in defaults.

        Args:
            values: Keyword arguments the rule was called with

        Returns:
            Complete attribute dict for the rule

        Raises:
            RuleError: On unknown or missing attributes or type mismatches
        """
        unknown = sorted(set(values) - set(self._by_name))
        if unknown:
            raise RuleError(f"{self.name} got unexpected attribute(s): {', '.join(unknown)}")

        checked: dict[str, Any] = {}
        for name, attr in self._by_name.items():
            if name in values and values[name] is not None:
                checked[name] = attr.check(values[name])
            elif attr.mandatory:
                raise RuleError(f"{self.name} missing mandatory attribute '{name}'")
            else:
                checked[name] = attr.default_value()
        return checked


class RuleClassProvider:
    """Registry of rule classes plus the content of the defaults package."""

    def __init__(
        self,
        rule_classes: list[RuleClass] | None = None,
        defaults_package_content: dict[str, str] | None = None,
    ):
        self._rule_classes: dict[str, RuleClass] = {}
        for rule_class in rule_classes or []:
            self.register(rule_class)
        self.defaults_package_content = dict(defaults_package_content or {})

    def register(self, rule_class: RuleClass) -> None:
        if rule_class.name in self._rule_classes:
            raise ValueError(f"Rule class already registered: {rule_class.name}")
        self._rule_classes[rule_class.name] = rule_class

    def get(self, name: str) -> RuleClass:
        if name not in self._rule_classes:
            raise KeyError(f"Unknown rule class: {name}")
        return self._rule_classes[name]

    def __contains__(self, name: str) -> bool:
        return name in self._rule_classes

    def __iter__(self) -> Iterator[RuleClass]:
        return iter(self._rule_classes.values())

    @property
    def names(self) -> list[str]:
        return sorted(self._rule_classes)


def _lib_attrs(*extra: Attribute) -> tuple[Attribute, ...]:
    return (
        Attribute("srcs", "label_list"),
        Attribute("deps", "label_list"),
        Attribute("data", "label_list"),
    ) + extra


def default_rule_class_provider() -> RuleClassProvider:
    """Provider with the standard set of general-purpose rules."""
    return RuleClassProvider(
        rule_classes=[
            RuleClass("filegroup", (Attribute("srcs", "label_list"), Attribute("data", "label_list"))),
            RuleClass(
                "genrule",
                (
                    Attribute("srcs", "label_list"),
                    Attribute("outs", "output_list", mandatory=True),
                    Attribute("cmd", "string", mandatory=True),
                    Attribute("tools", "label_list"),
                ),
            ),
            RuleClass("py_library", _lib_attrs()),
            RuleClass("py_binary", _lib_attrs(Attribute("main", "label"))),
            RuleClass("py_test", _lib_attrs(Attribute("size", "string", default="medium"))),
            RuleClass("sh_binary", (Attribute("srcs", "label_list"), Attribute("data", "label_list"))),
            RuleClass("test_suite", (Attribute("tests", "label_list"),)),
            RuleClass("alias", (Attribute("actual", "label", mandatory=True),)),
        ],
        defaults_package_content={
            "python_toolchain": "//tools/python:toolchain",
            "shell_toolchain": "//tools/sh:toolchain",
        },
    )
