"""
Deterministic resource naming and tagging, in the spirit of the cloudposse null-label module.

Every unit derives its resource names and base tags from a single NamingContext, so evaluating
the same inputs twice always yields the same names and tags.
"""

from __future__ import annotations

import dataclasses
import hashlib
import re
import typing

import ekstack

ID_HASH_LENGTH = 5
LABEL_ORDER = ("namespace", "stage", "name", "attributes")
REGEX_REPLACE_CHARS = re.compile("[^a-zA-Z0-9-]")


@dataclasses.dataclass(frozen=True)
class NamingContext:
    namespace: str = ""
    stage: str = ""
    name: str = ""
    attributes: tuple[str, ...] = ()
    delimiter: str = ekstack.DEFAULT_DELIMITER
    tags: typing.Mapping[str, str] = dataclasses.field(default_factory=dict)
    id_length_limit: int | None = None
    label_order: tuple[str, ...] = LABEL_ORDER

    def __post_init__(self):
        unknown = set(self.label_order) - set(LABEL_ORDER)
        if unknown:
            msg = f"unknown labels {sorted(unknown)}, expected a subset of {list(LABEL_ORDER)}"
            raise ekstack.ConfigurationError(msg, unit="context", field="label_order")

        if self.id_length_limit is not None and self.id_length_limit <= ID_HASH_LENGTH + len(self.delimiter):
            msg = f"id_length_limit must be greater than {ID_HASH_LENGTH + len(self.delimiter)}"
            raise ekstack.ConfigurationError(msg, unit="context", field="id_length_limit")

        # lists sneak in from yaml
        object.__setattr__(self, "attributes", tuple(self.attributes))
        object.__setattr__(self, "label_order", tuple(self.label_order))

    def _normalized(self, value: str) -> str:
        return REGEX_REPLACE_CHARS.sub("", value).lower()

    def _labels(self) -> list[str]:
        labels = []
        for label in self.label_order:
            if label == "attributes":
                labels.extend(self._normalized(a) for a in self.attributes)
            else:
                labels.append(self._normalized(getattr(self, label)))

        return [label for label in labels if label != ""]

    @property
    def id_full(self) -> str:
        return self.delimiter.join(self._labels())

    @property
    def id(self) -> str:
        full = self.id_full
        if self.id_length_limit is None or len(full) <= self.id_length_limit:
            return full

        digest = hashlib.md5(full.encode(), usedforsecurity=False).hexdigest()[:ID_HASH_LENGTH]
        truncated = full[: self.id_length_limit - ID_HASH_LENGTH - len(self.delimiter)].rstrip(self.delimiter)
        return f"{truncated}{self.delimiter}{digest}"

    @property
    def tags_base(self) -> dict[str, str]:
        base = {
            str(ekstack.TagKeys.NAME): self.id,
            str(ekstack.TagKeys.NAMESPACE): self.namespace,
            str(ekstack.TagKeys.STAGE): self.stage,
            str(ekstack.TagKeys.ATTRIBUTES): self.delimiter.join(self._normalized(a) for a in self.attributes),
        }
        return {k: v for k, v in base.items() if v != ""}

    @property
    def all_tags(self) -> dict[str, str]:
        return ekstack.merge_tags(self.tags_base, self.tags)

    def child(
        self,
        name: str | None = None,
        attributes: typing.Iterable[str] = (),
        tags: typing.Mapping[str, str] | None = None,
    ) -> NamingContext:
        """Derive a context for a sub-resource. The parent context is never modified."""
        return dataclasses.replace(
            self,
            name=self.name if name is None else name,
            attributes=(*self.attributes, *attributes),
            tags=ekstack.merge_tags(self.tags, tags),
        )

    def as_dict(self) -> dict[str, typing.Any]:
        return {
            "namespace": self.namespace,
            "stage": self.stage,
            "name": self.name,
            "attributes": list(self.attributes),
            "delimiter": self.delimiter,
            "tags": dict(self.tags),
            "id_length_limit": self.id_length_limit,
            "label_order": list(self.label_order),
        }


@dataclasses.dataclass(frozen=True)
class StackContext:
    """Everything implicit about where a stack runs, resolved once and handed to each unit."""

    naming: NamingContext
    caller: ekstack.CallerIdentity
    region: str

    @classmethod
    def resolve(cls, naming: NamingContext, region: str, exe_env: dict[str, str] | None = None) -> StackContext:
        caller, ok = ekstack.aws_whoami(exe_env)
        if not ok:
            msg = "unable to resolve the caller identity; check AWS credentials"
            raise ekstack.ConfigurationError(msg, unit="context", field="caller")

        return cls(naming=naming, caller=caller, region=region)

    @property
    def outputs(self) -> dict[str, typing.Any]:
        return {
            "id": self.naming.id,
            "tags": self.naming.all_tags,
            "account_id": self.caller.account_id,
            "caller_arn": self.caller.issuer_arn,
            "partition": self.caller.partition,
            "region": self.region,
        }
