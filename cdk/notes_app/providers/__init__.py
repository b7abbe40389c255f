"""Providers the driver can provision through.

- base.py: the Provider interface
- cdk_provider.py: declares CDK constructs, deployed by CloudFormation
- boto_provider.py: calls the AWS APIs directly with boto3
"""

from .base import Provider
from .boto_provider import BotoProvider
from .cdk_provider import CdkProvider

__all__ = ["Provider", "BotoProvider", "CdkProvider"]
