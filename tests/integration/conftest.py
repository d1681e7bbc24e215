"""Fixtures for integration tests against an EC2-compatible endpoint (e.g. LocalStack).

Start LocalStack and point the tests at it::

    docker run -p 4566:4566 -e SERVICES=ec2 localstack/localstack

    AWS_ENDPOINT_URL=http://localhost:4566 \
    AWS_ACCESS_KEY_ID=test \
    AWS_SECRET_ACCESS_KEY=test \
    pytest -m integration tests/integration
"""

from __future__ import annotations

import os
import uuid

import boto3
import pytest


@pytest.fixture(scope="session")
def endpoint_url() -> str:
    endpoint = os.getenv("AWS_ENDPOINT_URL")
    if not endpoint:
        pytest.skip("AWS_ENDPOINT_URL not set - LocalStack not available")
    return endpoint


@pytest.fixture(scope="session")
def ec2(endpoint_url: str):
    return boto3.client("ec2", region_name="us-east-1", endpoint_url=endpoint_url)


@pytest.fixture
def run_id() -> str:
    """Short unique suffix so concurrent runs do not see each other's resources."""
    return uuid.uuid4().hex[:8]
