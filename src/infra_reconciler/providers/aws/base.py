"""Shared plumbing for EC2 resource handlers."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, ClassVar

from botocore.exceptions import ClientError

from infra_reconciler.engine.errors import (
    PartialCreateError,
    PermanentProviderError,
    TransientProviderError,
)
from infra_reconciler.providers.aws.errors import is_not_found, provider_errors

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterator

    from infra_reconciler.engine.handlers import EngineContext, TypeMetadata
    from infra_reconciler.providers.aws.provider import AWSProvider

logger = logging.getLogger(__name__)

ADDRESS_TAG = "reconciler:address"


def tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def user_tags(raw: list[dict[str, str]] | None) -> dict[str, str]:
    """Tags as a dict, without the engine's own and AWS-reserved keys."""
    return {
        t["Key"]: t["Value"]
        for t in raw or []
        if t["Key"] != ADDRESS_TAG and not t["Key"].startswith("aws:")
    }


class EC2Handler:
    """Base class for handlers backed by the EC2 API."""

    metadata: ClassVar[TypeMetadata]

    def __init__(self, provider: AWSProvider) -> None:
        self._provider = provider

    @property
    def ec2(self) -> Any:
        return self._provider.ec2

    def _describe_one(self, action: str, call: Callable[[], Any]) -> Any | None:
        """Run a describe call for a single id; ``None`` when it does not exist."""
        with provider_errors(action):
            try:
                return call()
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise

    @contextmanager
    def _finishing_create(self, ctx: EngineContext, resource_id: str) -> Iterator[None]:
        """Wrap the calls that follow the one that created *resource_id*.

        A failure in here leaves the resource behind, so it is re-raised as
        ``PartialCreateError``; transient failures are marked resumable.
        """
        try:
            yield
        except PartialCreateError:
            raise
        except Exception as e:
            raise PartialCreateError(
                resource_id,
                f"create {ctx.address} did not finish: {e}",
                resumable=isinstance(e, TransientProviderError),
            ) from e

    def _wait_for(
        self,
        description: str,
        poll: Callable[[], str | None],
        *,
        ready: Collection[str | None],
        failed: Collection[str] = (),
    ) -> None:
        """Poll *poll* until it returns a state in *ready*.

        ``None`` from *poll* means the resource no longer exists, which counts
        as ready only when ``None`` is in *ready*.
        """
        deadline = time.monotonic() + self._provider.poll_timeout
        while True:
            state = poll()
            if state in ready:
                return
            if state in failed:
                raise PermanentProviderError(f"{description} entered state {state!r}")
            if time.monotonic() >= deadline:
                raise TransientProviderError(
                    f"Timed out waiting for {description} (last state {state!r})"
                )
            logger.debug("Waiting for %s (state %s)", description, state)
            time.sleep(self._provider.poll_interval)


class TaggedEC2Handler(EC2Handler):
    """Handler for taggable EC2 resources.

    Every resource is tagged with its engine address so an interrupted create
    can be found again by ``lookup``.
    """

    resource_kind: ClassVar[str]  # TagSpecifications ResourceType

    def _tag_specifications(self, ctx: EngineContext, tags: dict[str, str]) -> list[dict[str, Any]]:
        return [
            {
                "ResourceType": self.resource_kind,
                "Tags": tag_list({**tags, ADDRESS_TAG: ctx.address}),
            }
        ]

    def _update_tags(
        self, resource_id: str, desired: dict[str, str], prior: dict[str, str]
    ) -> None:
        removed = sorted(set(prior) - set(desired))
        changed = {k: v for k, v in desired.items() if prior.get(k) != v}
        with provider_errors(f"tag {resource_id}"):
            if removed:
                self.ec2.delete_tags(Resources=[resource_id], Tags=[{"Key": k} for k in removed])
            if changed:
                self.ec2.create_tags(Resources=[resource_id], Tags=tag_list(changed))

    def _find_by_address(self, ctx: EngineContext) -> list[dict[str, Any]]:
        """Live resources carrying *ctx*'s address tag."""
        raise NotImplementedError

    def _resource_id(self, item: dict[str, Any]) -> str:
        raise NotImplementedError

    def _attributes(self, item: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def lookup(
        self, ctx: EngineContext, *, exclude: Collection[str] = ()
    ) -> tuple[str, dict[str, Any]] | None:
        """Find the resource created for *ctx*'s address.

        Resources whose id is in *exclude* (already tracked in state) are
        skipped. More than one candidate is an error.
        """
        items = [i for i in self._find_by_address(ctx) if self._resource_id(i) not in exclude]
        if not items:
            return None
        if len(items) > 1:
            ids = ", ".join(sorted(self._resource_id(i) for i in items))
            raise PermanentProviderError(
                f"Several resources are tagged {ADDRESS_TAG}={ctx.address}: {ids}"
            )
        item = items[0]
        return self._resource_id(item), self._attributes(item)

    @staticmethod
    def address_filter(ctx: EngineContext) -> list[dict[str, Any]]:
        return [{"Name": f"tag:{ADDRESS_TAG}", "Values": [ctx.address]}]
