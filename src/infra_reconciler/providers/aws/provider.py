"""AWS provider - connection configuration for the EC2 API."""

from functools import cached_property
from typing import Any, Self

import boto3
from pydantic import BaseModel, ConfigDict


class AWSProvider(BaseModel):
    """Connection configuration for an AWS region.

    Credentials come from the usual boto3 chain (environment, shared config,
    instance role). For testing, use ``from_client`` to inject a client.

    Examples:
        provider = AWSProvider(region="eu-west-1", profile="infra")

        # With a stubbed or moto-backed client
        provider = AWSProvider.from_client(boto3.client("ec2", region_name="us-east-1"))
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None
    poll_interval: float = 5.0
    poll_timeout: float = 600.0

    # Injected client (for testing)
    _injected_client: Any = None

    @classmethod
    def from_client(cls, client: Any, **settings: Any) -> Self:
        """Create a provider around an existing EC2 client."""
        provider = cls(**settings)
        provider._injected_client = client
        return provider

    @cached_property
    def ec2(self) -> Any:
        """Get the EC2 client."""
        if self._injected_client is not None:
            return self._injected_client

        session = boto3.session.Session(profile_name=self.profile, region_name=self.region)
        return session.client("ec2", endpoint_url=self.endpoint_url)
