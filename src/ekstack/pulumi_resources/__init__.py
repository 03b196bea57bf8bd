import typing

import pulumi

UNIT_TYPE_PREFIX = "ekstack:units:"

# every unit component reports the signature it was built from under this output
SIGNATURE_OUTPUT = "ekstack_signature"

UnitOutputs = dict[str, typing.Any]


class UnitComponent(pulumi.ComponentResource):
    """
    Base for the component that realizes one unit. Subclasses build their child resources and then call
    `finish` with the unit's outputs; those are what other units reference.
    """

    name: str
    signature: str
    outputs: UnitOutputs

    def __init__(self, name: str, *args, signature: str = "", **kwargs):
        super().__init__(f"{UNIT_TYPE_PREFIX}{self.__class__.__name__}", name, *args, **kwargs)

        self.name = name
        self.signature = signature
        self.outputs = {}

    def finish(self, outputs: UnitOutputs) -> None:
        self.outputs = outputs
        self.register_outputs(outputs | {SIGNATURE_OUTPUT: self.signature})
