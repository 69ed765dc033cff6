"""Tests for terminology server routing."""

from __future__ import annotations

import pytest

from fhir_validation.config.settings import TerminologySettings, TerminologyServerSettings
from fhir_validation.terminology.router import TerminologyRouter
from fhir_validation.utils.errors import UnsupportedVersionError


def test_default_servers_are_ordered_by_priority():
    router = TerminologyRouter.from_settings(TerminologySettings().servers)

    assert [server.id for server in router.servers_for("R4")] == [
        "tx-fhir-org-r4",
        "csiro-ontoserver-r4",
    ]
    assert router.primary_for("4.0.1").id == "tx-fhir-org-r4"
    assert [server.id for server in router.fallbacks_for("R4")] == ["csiro-ontoserver-r4"]
    assert [server.id for server in router.servers_for("R6")] == ["tx-fhir-org-r5"]


def test_disabled_servers_are_skipped_and_ties_keep_declaration_order():
    router = TerminologyRouter.from_settings(
        [
            TerminologyServerSettings(id="b", url="https://b.example/", fhir_versions=["R4"]),
            TerminologyServerSettings(id="a", url="https://a.example", fhir_versions=["R4"]),
            TerminologyServerSettings(
                id="off", url="https://off.example", fhir_versions=["R4"], enabled=False, priority=0
            ),
        ]
    )

    assert [server.id for server in router.servers_for("R4")] == ["b", "a"]
    assert router.get("b").url == "https://b.example"
    assert router.primary_for("R5") is None


def test_unknown_version_is_rejected():
    router = TerminologyRouter([])
    with pytest.raises(UnsupportedVersionError):
        router.servers_for("DSTU2")


def test_duplicate_server_ids_are_rejected():
    server = {"id": "dup", "url": "https://x.example", "fhir_versions": ["R4"]}
    with pytest.raises(ValueError):
        TerminologySettings(servers=[server, server])
