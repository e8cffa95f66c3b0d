import logging

import pulumi

from eks_stack.config import load_environment_config
from eks_stack.orchestrator import StackOrchestrator
from eks_stack.providers import EksStack, PulumiProvider, create_aws_provider
from eks_stack.settings import get_settings

settings = get_settings()
logging.basicConfig(level=settings.log_level.upper())

config = load_environment_config()

aws_provider = create_aws_provider(config, settings.aws_assume_role_arn or None)
stack = EksStack(config.name, opts=pulumi.ResourceOptions(provider=aws_provider))
provider = PulumiProvider(aws_provider, parent=stack)

orchestrator = StackOrchestrator(provider)
graph = orchestrator.provision(config)
outputs = orchestrator.outputs

stack.register_outputs(
    {
        "vpc_id": provider.resource(outputs.topology.vpc).id,
        "cluster_name": provider.resource(outputs.cluster.handle).name,
    }
)


pulumi.export("vpc_id", provider.resource(outputs.topology.vpc).id)
pulumi.export(
    "public_subnet_ids",
    [provider.resource(s.handle).id for s in outputs.topology.public_subnets],
)
pulumi.export(
    "private_subnet_ids",
    [provider.resource(s.handle).id for s in outputs.topology.private_subnets],
)
pulumi.export("bastion_instance_id", provider.resource(outputs.bastion.instance).id)
pulumi.export("cluster_name", provider.resource(outputs.cluster.handle).name)
pulumi.export("cluster_endpoint", provider.resource(outputs.cluster.handle).endpoint)
pulumi.export(
    "node_group_role_arns",
    {ng.name: provider.resource(ng.role.handle).arn for ng in outputs.node_groups},
)
pulumi.export("resource_graph", graph.to_dict())
