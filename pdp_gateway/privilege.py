"""Resolve the instance profile (and its roles) attached to a caller instance."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError

from .credentials import CredentialRotator
from .errors import PDP_E_PRIVILEGE_LOOKUP, DependencyError

logger = logging.getLogger("pdp_gateway")


@dataclass(frozen=True)
class RoleDescriptor:
    name: str
    arn: str
    role_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "arn": self.arn, "roleId": self.role_id}


@dataclass(frozen=True)
class PrivilegeDescriptor:
    name: str
    arn: str
    profile_id: str
    path: str = "/"
    roles: Tuple[RoleDescriptor, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "arn": self.arn,
            "profileId": self.profile_id,
            "path": self.path,
            "roles": [r.to_dict() for r in self.roles],
        }

    @classmethod
    def from_instance_profile(cls, profile: Dict[str, Any]) -> "PrivilegeDescriptor":
        return cls(
            name=profile["InstanceProfileName"],
            arn=profile["Arn"],
            profile_id=profile["InstanceProfileId"],
            path=profile.get("Path") or "/",
            roles=tuple(
                RoleDescriptor(name=r["RoleName"], arn=r["Arn"], role_id=r["RoleId"])
                for r in profile.get("Roles") or []
            ),
        )


def profile_name_from_arn(arn: str) -> str:
    """``arn:aws:iam::123:instance-profile/path/web`` -> ``web``"""
    return arn.rsplit("/", 1)[-1]


class PrivilegeResolver:
    def __init__(self, rotator: CredentialRotator):
        self.rotator = rotator

    def resolve(self, instance_id: str, region: Optional[str] = None) -> Optional[PrivilegeDescriptor]:
        """Instance profile of ``instance_id``, or None when it has none.

        Both lookups go through the same snapshot so they use the same
        credentials and region.
        """
        snap = self.rotator.for_region(region) if region else self.rotator.snapshot()

        try:
            resp = snap.ec2.describe_instances(InstanceIds=[instance_id])
        except (BotoCoreError, ClientError) as e:
            raise DependencyError(
                code=PDP_E_PRIVILEGE_LOOKUP,
                message=f"Could not describe instance {instance_id}",
                details={"instance_id": instance_id, "region": snap.credentials.region, "error": str(e)},
            ) from e

        instances = [i for r in resp.get("Reservations") or [] for i in r.get("Instances") or []]
        if not instances:
            raise DependencyError(
                code=PDP_E_PRIVILEGE_LOOKUP,
                message=f"Instance {instance_id} not found in {snap.credentials.region}",
                retryable=False,
                details={"instance_id": instance_id, "region": snap.credentials.region},
            )

        profile_ref = instances[0].get("IamInstanceProfile") or {}
        arn = profile_ref.get("Arn")
        if not arn:
            logger.debug("Instance %s has no instance profile attached", instance_id)
            return None

        name = profile_name_from_arn(arn)
        try:
            resp = snap.iam.get_instance_profile(InstanceProfileName=name)
        except (BotoCoreError, ClientError) as e:
            raise DependencyError(
                code=PDP_E_PRIVILEGE_LOOKUP,
                message=f"Could not read instance profile {name}",
                details={"instance_id": instance_id, "instance_profile": name, "error": str(e)},
            ) from e

        return PrivilegeDescriptor.from_instance_profile(resp["InstanceProfile"])
