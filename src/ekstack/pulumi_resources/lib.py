_AWS_TAG_KEY_MAX_LENGTH = 128
_AWS_TAG_VALUE_MAX_LENGTH = 256


def validate_tags(tags: dict[str, str]) -> dict[str, str]:
    """Validate tags against the AWS tagging limits and return them unchanged.

    Keys must be non-empty, at most 128 characters and must not use the reserved
    'aws:' prefix. Values may be empty but must not exceed 256 characters.
    """
    for key, value in tags.items():
        if not key:
            msg = "tag key must not be empty"
            raise ValueError(msg)
        if key.lower().startswith("aws:"):
            msg = f"tag key uses reserved 'aws:' prefix: {key!r}"
            raise ValueError(msg)
        if len(key) > _AWS_TAG_KEY_MAX_LENGTH:
            msg = f"tag key exceeds AWS 128-character limit ({len(key)} chars): {key!r}"
            raise ValueError(msg)
        if value is None:
            msg = f"tag value must not be None: key={key}"
            raise ValueError(msg)
        if len(value) > _AWS_TAG_VALUE_MAX_LENGTH:
            msg = f"tag value exceeds AWS 256-character limit ({len(value)} chars): key={key}"
            raise ValueError(msg)
    return tags
