import json

import pulumi
import pulumi_aws as aws

import ekstack.descriptors
import ekstack.pulumi_resources


class AWSEKSAddons(ekstack.pulumi_resources.UnitComponent):
    """
    The managed add-ons of a cluster.

    An add-on without a version gets the default version for the cluster's kubernetes version on first install;
    upgrading it later means pinning a newer one.
    """

    descriptor: ekstack.descriptors.AddonsDescriptor

    addons: dict[str, aws.eks.Addon]

    def __init__(self, name: str, descriptor: ekstack.descriptors.AddonsDescriptor, *args, **kwargs):
        super().__init__(name, *args, **kwargs)

        self.descriptor = descriptor
        self.tags = dict(descriptor.tags)
        self.addons = {}

        for addon in descriptor.addons:
            self.with_addon(addon)

        self.finish(
            {
                "addons": {addon_name: addon.arn for addon_name, addon in self.addons.items()},
                "addon_versions": {addon_name: addon.addon_version for addon_name, addon in self.addons.items()},
            }
        )

    def with_addon(self, addon: ekstack.descriptors.AddonDescriptor):
        self.addons[addon.name] = aws.eks.Addon(
            addon.name,
            args=aws.eks.AddonArgs(
                addon_name=addon.name,
                addon_version=addon.version,
                cluster_name=self.descriptor.cluster_name,
                resolve_conflicts_on_create=str(addon.resolve_conflicts_on_create),
                resolve_conflicts_on_update=str(addon.resolve_conflicts_on_update),
                service_account_role_arn=addon.service_account_role_arn,
                configuration_values=(
                    json.dumps(dict(addon.configuration_values)) if addon.configuration_values else None
                ),
                tags=self.tags,
            ),
            opts=pulumi.ResourceOptions(parent=self),
        )

        return self
