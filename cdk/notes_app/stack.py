from typing import Any, Optional

from aws_cdk import Stack
from constructs import Construct

from .config import ProvisioningConfig
from .driver import apply
from .logging import StructuredLogger
from .providers.cdk_provider import CdkProvider
from .specs import ProvisionedOutputs
from .topology import build_topology


class NotesAppStack(Stack):
    """
    Users and Notes tables, the notes Lambda and the notes AppSync API.

    The topology is built from `config` and applied through a CdkProvider
    bound to this stack; the stack exports GraphQLApiURL and GraphQLApiKey.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        config: ProvisioningConfig,
        logger: Optional[StructuredLogger] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.graph = build_topology(config)
        self.provider = CdkProvider(self)
        self.outputs: ProvisionedOutputs = apply(self.graph, self.provider, logger)
