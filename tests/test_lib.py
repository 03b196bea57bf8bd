import pytest

from ekstack.pulumi_resources.lib import validate_tags


def test_validate_tags_returns_tags_unchanged() -> None:
    tags = {"Name": "eg-test-demo", "ekstack.io/unit": "vpc", "Empty": ""}
    assert validate_tags(tags) is tags


def test_validate_tags_empty_key() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        validate_tags({"": "value"})


def test_validate_tags_reserved_prefix() -> None:
    with pytest.raises(ValueError, match="reserved 'aws:' prefix"):
        validate_tags({"AWS:cloudformation:stack-name": "value"})


def test_validate_tags_key_too_long() -> None:
    validate_tags({"k" * 128: "value"})

    with pytest.raises(ValueError, match="128-character limit"):
        validate_tags({"k" * 129: "value"})


def test_validate_tags_value_too_long() -> None:
    validate_tags({"key": "v" * 256})

    with pytest.raises(ValueError, match="256-character limit"):
        validate_tags({"key": "v" * 257})


def test_validate_tags_none_value() -> None:
    with pytest.raises(ValueError, match="must not be None"):
        validate_tags({"key": None})  # type: ignore[dict-item]
