from __future__ import annotations

import pytest

from infra_reconciler.resources.refs import (
    UNKNOWN,
    Ref,
    collect_refs,
    contains_unknown,
    decode_refs,
    encode_refs,
    is_address,
    parse_ref,
    resolve_refs,
)
from infra_reconciler.resources.spec import ResourceSpec


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("${aws_vpc.main.id}", Ref("aws_vpc.main", "id")),
        ("${aws_subnet.public[2].arn}", Ref("aws_subnet.public[2]", "arn")),
        (" ${aws_vpc.main.cidr_block} ", Ref("aws_vpc.main", "cidr_block")),
        ("aws_vpc.main.id", None),
        ("prefix-${aws_vpc.main.id}", None),
        ("${aws_vpc.main}", None),
        (42, None),
    ],
)
def test_parse_ref(text: object, expected: Ref | None) -> None:
    assert parse_ref(text) == expected


def test_is_address() -> None:
    assert is_address("aws_vpc.main")
    assert is_address("aws_subnet.public[0]")
    assert not is_address("aws_vpc")
    assert not is_address("aws_vpc.main.id")
    assert not is_address("aws_subnet.public[x]")


def test_ref_text_form() -> None:
    assert str(Ref("aws_vpc.main", "id")) == "${aws_vpc.main.id}"


def test_decode_and_collect_nested() -> None:
    value = decode_refs(
        {
            "vpc_id": "${aws_vpc.main.id}",
            "routes": [{"nat_gateway_id": "${aws_nat_gateway.main.id}", "cidr": "0.0.0.0/0"}],
            "plain": "text",
        }
    )

    assert collect_refs(value) == [
        Ref("aws_vpc.main", "id"),
        Ref("aws_nat_gateway.main", "id"),
    ]
    assert encode_refs(value)["routes"][0]["nat_gateway_id"] == "${aws_nat_gateway.main.id}"


def test_resolve_refs() -> None:
    value = {"vpc_id": Ref("aws_vpc.main", "id"), "ids": [Ref("aws_eip.a", "id"), "x"]}
    ids = {"aws_vpc.main": "vpc-1", "aws_eip.a": "eipalloc-2"}

    assert resolve_refs(value, lambda r: ids[r.address]) == {
        "vpc_id": "vpc-1",
        "ids": ["eipalloc-2", "x"],
    }


def test_contains_unknown() -> None:
    assert contains_unknown({"a": [1, UNKNOWN]})
    assert not contains_unknown({"a": [1, "known"]})


class TestResourceSpec:
    def test_address(self) -> None:
        assert ResourceSpec(resource_type="aws_vpc", name="main").address == "aws_vpc.main"
        spec = ResourceSpec(resource_type="aws_subnet", name="public", index=1)
        assert spec.address == "aws_subnet.public[1]"

    def test_references_are_decoded(self) -> None:
        spec = ResourceSpec(
            resource_type="aws_subnet",
            name="a",
            attributes={"vpc_id": "${aws_vpc.main.id}"},
            depends_on=["aws_internet_gateway.main"],
        )
        assert spec.attributes["vpc_id"] == Ref("aws_vpc.main", "id")
        assert spec.dependency_addresses() == ["aws_internet_gateway.main", "aws_vpc.main"]
        assert spec.model_dump(mode="json")["attributes"] == {"vpc_id": "${aws_vpc.main.id}"}

    def test_fingerprint_tracks_content(self) -> None:
        def vpc(name: str, cidr: str) -> ResourceSpec:
            return ResourceSpec(resource_type="aws_vpc", name=name, attributes={"cidr_block": cidr})

        a = vpc("main", "10.0.0.0/16")
        b = vpc("other", "10.0.0.0/16")
        c = vpc("main", "10.1.0.0/16")

        assert a.fingerprint() == b.fingerprint()
        assert a.fingerprint() != c.fingerprint()

    def test_rejects_unknown_fields(self) -> None:
        with pytest.raises(ValueError):
            ResourceSpec(resource_type="aws_vpc", name="main", count=2)  # type: ignore[call-arg]
