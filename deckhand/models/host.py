"""Topology description and host records produced by the Provisioner."""

from __future__ import annotations

import ipaddress
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from deckhand.core.hasher import content_address

# Ingress is restricted to ssh, http and https. This is policy, not a
# technical limit of the provider.
ALLOWED_INGRESS_PORTS: frozenset[int] = frozenset({22, 80, 443})

DEFAULT_SSH_USERNAME = "ubuntu"


class TopologyDescription(BaseModel):
    """Declarative description of the single-host deployment target.

    Accepts snake_case or camelCase keys, and ``ingress`` for the port list,
    so topology files written for the CI pipeline load unchanged.
    """

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    project_name: str = "twotier"
    region: str = "ap-south-1"
    instance_class: str = "t3.micro"
    vpc_cidr: str = "10.0.0.0/16"
    subnet_cidr: str = "10.0.1.0/24"
    ssh_ingress_cidr: str = "0.0.0.0/0"
    ingress_ports: list[int] = Field(default=[22, 80, 443], alias="ingress")
    elastic_address: bool = False
    ssh_public_key: str = ""

    @field_validator("ingress_ports")
    @classmethod
    def _ports_on_allow_list(cls, ports: list[int]) -> list[int]:
        rejected = sorted(set(ports) - ALLOWED_INGRESS_PORTS)
        if rejected:
            raise ValueError(
                f"ingress ports {rejected} are not allowed; "
                f"permitted ports are {sorted(ALLOWED_INGRESS_PORTS)}"
            )
        return sorted(set(ports))

    @field_validator("vpc_cidr", "subnet_cidr", "ssh_ingress_cidr")
    @classmethod
    def _valid_cidr(cls, value: str) -> str:
        return str(ipaddress.ip_network(value, strict=True))

    @field_validator("project_name")
    @classmethod
    def _project_name_usable_as_prefix(cls, value: str) -> str:
        if not value or not value.replace("-", "").isalnum():
            raise ValueError("project_name must be alphanumeric with dashes")
        return value

    @model_validator(mode="after")
    def _subnet_inside_vpc(self) -> TopologyDescription:
        vpc = ipaddress.ip_network(self.vpc_cidr)
        subnet = ipaddress.ip_network(self.subnet_cidr)
        if not subnet.subnet_of(vpc):
            raise ValueError(f"subnet {subnet} is outside vpc {vpc}")
        return self

    @property
    def host_identifier(self) -> str:
        """Stable logical identifier of the host this description yields."""
        return f"{self.project_name}-{self.region}-host"

    def resource_name(self, kind: str) -> str:
        """Provider resource name, prefixed with the project name."""
        return f"{self.project_name}-{kind}"

    def fingerprint(self) -> str:
        """Content address of the description, used for idempotence."""
        return content_address(self.model_dump(mode="json"))

    def ingress_rules(self) -> list[IngressRule]:
        rules = []
        for port in self.ingress_ports:
            cidr = self.ssh_ingress_cidr if port == 22 else "0.0.0.0/0"
            rules.append(IngressRule(port=port, cidr=cidr))
        return rules


class IngressRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    port: int
    cidr: str
    protocol: str = "tcp"


class HostRecord(BaseModel):
    """A provisioned compute host.

    Immutable once created. A destructive re-creation yields a new record
    with the same ``identifier``, a bumped ``generation`` and possibly a
    new ``address``.
    """

    model_config = ConfigDict(frozen=True)

    identifier: str
    instance_id: str
    address: str
    ssh_username: str = DEFAULT_SSH_USERNAME
    ingress_rules: list[IngressRule] = []
    description_fingerprint: str = ""
    generation: int = 1
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
