"""Provider backends for the Provisioner.

Defines the ``ProviderBackend`` Protocol and two implementations:

- ``LocalProvider`` — a JSON-backed simulated cloud with an instance quota
  and deterministic addresses from TEST-NET-3. Used by tests, the demo and
  ``DECKHAND_BACKEND=local``.
- ``TerraformProvider`` — drives ``terraform init/apply/output`` in a
  working directory holding the VPC/subnet/security-group/instance
  module. The module must accept the variables written to
  ``deckhand.auto.tfvars.json`` and expose ``public_ip`` and
  ``instance_id`` outputs.
"""

from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from deckhand.core.hasher import sha256_hex
from deckhand.errors import ProvisioningError
from deckhand.models.host import HostRecord, TopologyDescription

logger = logging.getLogger(__name__)

# Changing any of these destroys and re-creates the instance. Region is not
# one of them: it is part of the host identifier, so a new region is a new host.
REPLACEMENT_FIELDS: tuple[str, ...] = (
    "instance_class",
    "vpc_cidr",
    "subnet_cidr",
    "ssh_public_key",
)

_QUOTA_MARKERS = ("LimitExceeded", "QuotaExceeded", "quota", "InsufficientInstanceCapacity")


@runtime_checkable
class ProviderBackend(Protocol):
    """Protocol for infrastructure backends."""

    def lookup(self, identifier: str) -> HostRecord | None:
        """Return the host currently recorded under *identifier*, if any."""
        ...

    def apply(self, description: TopologyDescription) -> HostRecord:
        """Create or update the host so it matches *description*."""
        ...

    def destroy(self, identifier: str) -> bool:
        """Tear the host down. Returns False if there was nothing to destroy."""
        ...


def _instance_id(identifier: str, generation: int) -> str:
    return "i-" + sha256_hex(f"{identifier}:{generation}".encode())[:17]


def _next_generation(
    previous: HostRecord | None,
    previous_description: dict[str, Any] | None,
    description: TopologyDescription,
) -> tuple[int, bool]:
    """Return (generation, replaced) for applying *description* over *previous*."""
    if previous is None:
        return 1, True
    current = description.model_dump(mode="json")
    old = previous_description or {}
    replaced = any(old.get(f) != current[f] for f in REPLACEMENT_FIELDS)
    return (previous.generation + 1 if replaced else previous.generation), replaced


class LocalProvider:
    """Simulated single-region cloud, persisted as JSON.

    Parameters
    ----------
    state_path:
        JSON file holding the simulated resources. ``None`` keeps
        everything in memory.
    max_instances:
        Instance quota; exceeding it raises ``ProvisioningError`` the way a
        provider-side limit would.
    """

    def __init__(self, state_path: Path | None = None, *, max_instances: int = 1) -> None:
        self._state_path = Path(state_path) if state_path else None
        self._max_instances = max_instances
        self._state: dict[str, Any] = {"next_address": 10, "hosts": {}}
        if self._state_path and self._state_path.exists():
            self._state = json.loads(self._state_path.read_text(encoding="utf-8"))
        self.apply_calls = 0

    def _save(self) -> None:
        if self._state_path:
            self._state_path.parent.mkdir(parents=True, exist_ok=True)
            self._state_path.write_text(json.dumps(self._state, indent=2), encoding="utf-8")

    def _allocate_address(self) -> str:
        octet = self._state["next_address"]
        if octet > 254:
            raise ProvisioningError(
                "AddressLimitExceeded: simulated address pool exhausted",
                remediation="Release unused addresses; deckhand does not retry.",
            )
        self._state["next_address"] = octet + 1
        return f"203.0.113.{octet}"

    def lookup(self, identifier: str) -> HostRecord | None:
        entry = self._state["hosts"].get(identifier)
        return HostRecord.model_validate(entry["record"]) if entry else None

    def apply(self, description: TopologyDescription) -> HostRecord:
        self.apply_calls += 1
        identifier = description.host_identifier
        entry = self._state["hosts"].get(identifier)
        previous = HostRecord.model_validate(entry["record"]) if entry else None

        if previous is None and len(self._state["hosts"]) >= self._max_instances:
            raise ProvisioningError(
                f"InstanceLimitExceeded: quota of {self._max_instances} "
                f"instance(s) reached in {description.region}",
                remediation="Tear down an unused host or raise the quota; deckhand does not retry.",
            )

        generation, replaced = _next_generation(
            previous, entry["description"] if entry else None, description
        )
        elastic_before = bool(entry and entry["description"].get("elastic_address"))
        keep_address = previous is not None and (
            (not replaced and elastic_before == description.elastic_address)
            or (replaced and elastic_before and description.elastic_address)
        )
        address = previous.address if keep_address else self._allocate_address()

        record = HostRecord(
            identifier=identifier,
            instance_id=_instance_id(identifier, generation),
            address=address,
            ingress_rules=description.ingress_rules(),
            description_fingerprint=description.fingerprint(),
            generation=generation,
        )
        self._state["hosts"][identifier] = {
            "record": record.model_dump(mode="json"),
            "description": description.model_dump(mode="json"),
        }
        self._save()
        logger.debug(
            "Local provider applied %s (generation %d, replaced=%s)",
            identifier,
            generation,
            replaced,
        )
        return record

    def destroy(self, identifier: str) -> bool:
        removed = self._state["hosts"].pop(identifier, None) is not None
        self._save()
        return removed


class TerraformProvider:
    """Provision through a Terraform working directory.

    Parameters
    ----------
    workdir:
        Directory holding the Terraform module.
    run:
        ``subprocess.run``-compatible callable, replaceable in tests.
    """

    TFVARS_FILE = "deckhand.auto.tfvars.json"
    RECORD_FILE = ".deckhand-host.json"

    def __init__(
        self,
        workdir: Path,
        *,
        terraform_bin: str = "terraform",
        run: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ) -> None:
        self._workdir = Path(workdir)
        self._bin = terraform_bin
        self._run = run

    def _records(self) -> dict[str, Any]:
        path = self._workdir / self.RECORD_FILE
        return json.loads(path.read_text(encoding="utf-8")) if path.exists() else {}

    def _write_records(self, records: dict[str, Any]) -> None:
        (self._workdir / self.RECORD_FILE).write_text(
            json.dumps(records, indent=2), encoding="utf-8"
        )

    def _terraform(self, *args: str) -> str:
        try:
            proc = self._run(
                [self._bin, *args],
                cwd=str(self._workdir),
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise ProvisioningError(
                f"terraform binary not found: {self._bin}",
                remediation="Install Terraform or set the binary path.",
            ) from exc
        if proc.returncode != 0:
            stderr = (proc.stderr or "").strip()
            if any(marker in stderr for marker in _QUOTA_MARKERS):
                raise ProvisioningError(
                    f"provider resource limit reached: {stderr}",
                    remediation="Request a quota increase or release unused resources; "
                    "deckhand does not retry.",
                )
            raise ProvisioningError(f"terraform {args[0]} failed: {stderr}")
        return proc.stdout

    def lookup(self, identifier: str) -> HostRecord | None:
        entry = self._records().get(identifier)
        return HostRecord.model_validate(entry["record"]) if entry else None

    def apply(self, description: TopologyDescription) -> HostRecord:
        tfvars = {
            "project_name": description.project_name,
            "region": description.region,
            "instance_type": description.instance_class,
            "vpc_cidr": description.vpc_cidr,
            "subnet_cidr": description.subnet_cidr,
            "ssh_ingress_cidr": description.ssh_ingress_cidr,
            "ingress_ports": description.ingress_ports,
            "enable_eip": description.elastic_address,
            "public_key": description.ssh_public_key,
        }
        self._workdir.mkdir(parents=True, exist_ok=True)
        (self._workdir / self.TFVARS_FILE).write_text(
            json.dumps(tfvars, indent=2), encoding="utf-8"
        )

        self._terraform("init", "-input=false")
        self._terraform("apply", "-auto-approve", "-input=false")
        outputs = json.loads(self._terraform("output", "-json"))
        try:
            address = outputs["public_ip"]["value"]
            instance_id = outputs["instance_id"]["value"]
        except KeyError as exc:
            raise ProvisioningError(
                f"terraform outputs are missing {exc.args[0]!r}",
                remediation="Expose public_ip and instance_id outputs in the module.",
            ) from exc

        records = self._records()
        identifier = description.host_identifier
        entry = records.get(identifier)
        previous = HostRecord.model_validate(entry["record"]) if entry else None
        generation = previous.generation if previous else 1
        if previous is not None and previous.instance_id != instance_id:
            generation += 1

        record = HostRecord(
            identifier=identifier,
            instance_id=instance_id,
            address=address,
            ingress_rules=description.ingress_rules(),
            description_fingerprint=description.fingerprint(),
            generation=generation,
        )
        records[identifier] = {
            "record": record.model_dump(mode="json"),
            "description": description.model_dump(mode="json"),
        }
        self._write_records(records)
        return record

    def destroy(self, identifier: str) -> bool:
        records = self._records()
        if identifier not in records:
            return False
        self._terraform("destroy", "-auto-approve", "-input=false")
        del records[identifier]
        self._write_records(records)
        return True
