import dataclasses

import pytest

import ekstack
import ekstack.pulumi_resources.aws_vpc
import ekstack.sources
from ekstack.sources import DEFAULT_SOURCES, UnitSource


def test_default_sources_cover_every_kind() -> None:
    assert set(DEFAULT_SOURCES) == set(ekstack.UnitKind)
    for kind, source in DEFAULT_SOURCES.items():
        assert source.kind == kind


def test_default_sources_are_valid() -> None:
    ekstack.sources.validate_sources(DEFAULT_SOURCES)


def test_load() -> None:
    assert DEFAULT_SOURCES[ekstack.UnitKind.VPC].load() is ekstack.pulumi_resources.aws_vpc.AWSVpc


def test_signature_is_content_addressed() -> None:
    source = DEFAULT_SOURCES[ekstack.UnitKind.VPC]

    assert source.signature == dataclasses.replace(source).signature
    assert source.signature != dataclasses.replace(source, version="6.66.3").signature
    assert source.signature != DEFAULT_SOURCES[ekstack.UnitKind.CLUSTER].signature


def test_sources_with_overrides() -> None:
    sources = ekstack.sources.sources_with_overrides({"vpc": {"version": "6.67.0"}})

    assert sources[ekstack.UnitKind.VPC].version == "6.67.0"
    assert sources[ekstack.UnitKind.VPC].component == DEFAULT_SOURCES[ekstack.UnitKind.VPC].component
    assert sources[ekstack.UnitKind.CLUSTER] == DEFAULT_SOURCES[ekstack.UnitKind.CLUSTER]
    # the defaults are untouched
    assert DEFAULT_SOURCES[ekstack.UnitKind.VPC].version == ekstack.sources.AWS_PROVIDER_VERSION


def test_sources_with_overrides_unknown_kind() -> None:
    with pytest.raises(ekstack.ConfigurationError, match="unknown unit kind 'database'") as excinfo:
        ekstack.sources.sources_with_overrides({"database": {"version": "1.0.0"}})

    assert excinfo.value.unit == "sources"


def test_sources_with_overrides_unknown_key() -> None:
    with pytest.raises(ekstack.ConfigurationError, match="unknown source key 'pin'") as excinfo:
        ekstack.sources.sources_with_overrides({"vpc": {"pin": "6.67.0"}})

    assert excinfo.value.field == "vpc.pin"


def test_unquoted_version_is_rejected() -> None:
    sources = ekstack.sources.sources_with_overrides({"vpc": {"version": 6.67}})

    with pytest.raises(ekstack.ConfigurationError, match="not pinned") as excinfo:
        ekstack.sources.validate_sources(sources)

    assert excinfo.value.field == "vpc.version"


@pytest.mark.parametrize("version", ["6", "6.66", "^6.66.2", "~6.66", "latest", "6.66.x", ""])
def test_floating_versions_are_rejected(version: str) -> None:
    sources = dict(DEFAULT_SOURCES)
    sources[ekstack.UnitKind.VPC] = dataclasses.replace(sources[ekstack.UnitKind.VPC], version=version)

    with pytest.raises(ekstack.ConfigurationError, match="not pinned") as excinfo:
        ekstack.sources.validate_sources(sources)

    assert excinfo.value.field == "vpc.version"


def test_components_must_import() -> None:
    sources = dict(DEFAULT_SOURCES)
    sources[ekstack.UnitKind.VPC] = UnitSource(
        kind=ekstack.UnitKind.VPC, component="ekstack.pulumi_resources.aws_vpc:Nope"
    )

    with pytest.raises(ekstack.ConfigurationError, match="could not be imported"):
        ekstack.sources.validate_sources(sources)


def test_kind_mismatch() -> None:
    sources = dict(DEFAULT_SOURCES)
    sources[ekstack.UnitKind.VPC] = DEFAULT_SOURCES[ekstack.UnitKind.CLUSTER]

    with pytest.raises(ekstack.ConfigurationError, match="declares kind 'cluster'"):
        ekstack.sources.validate_sources(sources)
