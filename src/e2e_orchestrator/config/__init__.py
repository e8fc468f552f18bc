"""Configuration models and file loaders."""

from .loader import load_fixture_file, load_seeds, load_services, read_document
from .models import (
    FixtureDefinition,
    ReadinessDescriptor,
    ReadinessKind,
    SeedStep,
    ServiceSpec,
)

__all__ = [
    "FixtureDefinition",
    "ReadinessDescriptor",
    "ReadinessKind",
    "SeedStep",
    "ServiceSpec",
    "load_fixture_file",
    "load_seeds",
    "load_services",
    "read_document",
]
