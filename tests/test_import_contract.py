#!filepath: tests/test_import_contract.py
from __future__ import annotations

import importlib
from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True, slots=True)
class ImportContract:
    """A list of import targets that must remain stable.

    Args:
        targets: Import strings to validate.
    """

    targets: tuple[str, ...]


def _contract() -> ImportContract:
    """Build the import contract.

    Returns:
        ImportContract: Contract containing stable import targets.
    """
    return ImportContract(
        targets=(
            "ontario_obits_app.settings",
            "ontario_obits_app.admin_ops",
            "ontario_obits_app.cli",
            "ontario_obits_app.llm",
            "ontario_obits_app.llm.rate_limiter",
            "ontario_obits_app.modules.collection_stage",
            "ontario_obits_app.modules.rewrite_stage",
            "ontario_obits_app.modules.audit_stage",
            "ontario_obits_app.sources.registry",
            "ontario_obits_app.validation.fact_check",
        )
    )


def _import_all(targets: Iterable[str]) -> None:
    """Import all targets.

    Args:
        targets: Module import paths.

    Raises:
        ImportError: If any import fails.
    """
    for t in targets:
        importlib.import_module(t)


def test_import_contract() -> None:
    """Validate that stable import targets remain importable."""
    contract = _contract()
    _import_all(contract.targets)


def test_every_adapter_is_registered() -> None:
    from ontario_obits_app.modules.collection_stage import ADAPTERS, _load_adapter_class
    from ontario_obits_app.sources.models import ADAPTER_KINDS

    assert set(ADAPTERS) == set(ADAPTER_KINDS)
    for kind, dotted in ADAPTERS.items():
        assert _load_adapter_class(dotted).kind == kind
