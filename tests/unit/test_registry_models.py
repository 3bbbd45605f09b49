"""Tests for registry data models."""

import pytest
from pydantic import ValidationError

from modweave.registry import (
    DependencySpec,
    ModuleDescriptor,
    ModuleStatus,
    SemanticVersion,
    version_satisfies,
)


def test_semantic_version_parsing_and_string() -> None:
    sv = SemanticVersion.parse("1.2.3")
    assert (sv.major, sv.minor, sv.patch) == (1, 2, 3)
    assert str(sv) == "1.2.3"


def test_short_versions_are_zero_padded() -> None:
    assert SemanticVersion.parse("2") == SemanticVersion.parse("2.0.0")
    assert SemanticVersion.parse("1.4") < SemanticVersion.parse("1.10")
    with pytest.raises(ValueError):
        SemanticVersion.parse("1.x")


@pytest.mark.parametrize(
    "version,constraint,expected",
    [
        ("1.2.0", None, True),
        ("1.2.0", "*", True),
        ("1.2.0", ">=1.0", True),
        ("0.9.0", ">=1.0", False),
        ("1.2.0", "1.2", True),
        ("1.2.1", "==1.2", False),
        ("1.9.0", "^1.2", True),
        ("2.0.0", "^1.2", False),
        ("1.2.7", "~1.2", True),
        ("1.3.0", "~1.2", False),
        ("1.0.0", "<2", True),
        ("1.0.0", "!=1.0", False),
    ],
)
def test_version_constraints(version, constraint, expected) -> None:
    assert version_satisfies(SemanticVersion.parse(version), constraint) is expected


def test_dependency_spec_parsing() -> None:
    assert DependencySpec.parse("Billing") == DependencySpec(name="Billing")
    dep = DependencySpec.parse("Billing >=1.2")
    assert dep.name == "Billing"
    assert dep.constraint == ">=1.2"


def test_module_descriptor_defaults_and_document() -> None:
    descriptor = ModuleDescriptor(
        name="Permits", version="1.2", dependencies=["Billing>=1.0", "Inspections"]
    )
    assert descriptor.status is ModuleStatus.REGISTERED
    assert descriptor.dependency_names == ["Billing", "Inspections"]
    assert descriptor.subscribes == []

    doc = descriptor.to_document()
    assert doc["version"] == "1.2.0"
    restored = ModuleDescriptor.model_validate(doc)
    assert restored.version == SemanticVersion(major=1, minor=2)
    assert restored.dependencies[0].constraint == ">=1.0"


def test_module_descriptor_rejects_self_dependency_and_blank_name() -> None:
    with pytest.raises(ValidationError):
        ModuleDescriptor(name="Permits", version="1.0", dependencies=["Permits"])
    with pytest.raises(ValidationError):
        ModuleDescriptor(name="  ", version="1.0")
