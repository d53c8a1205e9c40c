"""
Resource graph builder for ephemeral environments.

Assembles the attribute payloads for the two components that make up one
environment:

1. A bootstrap script component (schema ``Userdata``) whose content is the
   template with the image tag rendered in, tagged ``Branch=<branch>``.
2. A compute instance component (schema ``AWS::EC2::Instance``) with static
   sizing plus cross-component references ("take attribute P from component
   X"), which the remote system resolves.

Building is pure data assembly. Loading the template from disk is a separate
helper so the builder itself does no I/O.
"""

from dataclasses import dataclass, field, fields
from importlib import resources
from pathlib import Path
from typing import Any, Optional

from envstack.errors import ConfigError


PLACEHOLDER_LINE = 'IMAGE_TAG="{{IMAGE_TAG}}"'

# Where the remote system exposes the provisioned address
PUBLIC_IP_PATH = "root/resource_value/PublicIp"


def source_ref(component: str, path: str) -> dict[str, Any]:
    """Attribute value meaning "read ``path`` from the component named ``component``"."""
    return {"$source": {"component": component, "path": path}}


@dataclass
class ResourceGraphSettings:
    """Names and sizing used when building an environment graph."""
    instance_schema: str = "AWS::EC2::Instance"
    script_schema: str = "Userdata"
    view_name: str = "Environments"
    instance_type: str = "t3.small"
    root_device_name: str = "/dev/sda1"
    volume_size: int = 20
    volume_type: str = "gp3"
    script_name_prefix: str = "tonys-chips-userdata"
    instance_tag_prefix: str = "tc-validation"
    security_group: str = "tonys-chips-api-sg"
    image: str = "amazon-linux-ami"
    subnet: str = "sandbox-default-subnet-us-east-1d"
    key_pair: str = "tonys-chips-ssh-key"
    region: str = "us-east-1"
    instance_profile: str = "ec2-ecr-pull-instance-profile"
    credential: str = "sandbox"
    image_tag_component: str = "{environment}-tonys-chips-image-tag"

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "ResourceGraphSettings":
        """Build settings from a config mapping, rejecting unknown keys."""
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown resources setting(s): {', '.join(unknown)}")
        return cls(**data)

    @property
    def schemas(self) -> tuple[str, str]:
        """Schemas owned by a branch environment, instance first."""
        return (self.instance_schema, self.script_schema)


@dataclass
class ComponentSpec:
    """Everything needed for one create-component call."""
    schema_name: str
    name: str
    attributes: dict[str, Any] = field(default_factory=dict)
    view_name: Optional[str] = None


@dataclass
class EnvironmentGraph:
    bootstrap_script: ComponentSpec
    instance: ComponentSpec


def load_bootstrap_template(path: Optional[Path] = None) -> str:
    """Read the bootstrap script template (packaged default unless ``path``)."""
    if path is not None:
        return Path(path).read_text(encoding="utf-8")
    return resources.files("envstack").joinpath("templates/userdata.sh").read_text(encoding="utf-8")


class ResourceGraphBuilder:
    """Builds component payloads for one environment."""

    def __init__(self, settings: Optional[ResourceGraphSettings] = None):
        self.settings = settings or ResourceGraphSettings()

    def render_bootstrap_script(self, template: str, version: str) -> str:
        if PLACEHOLDER_LINE not in template:
            raise ConfigError(f"Bootstrap template is missing the {PLACEHOLDER_LINE} line")
        return template.replace(PLACEHOLDER_LINE, f'IMAGE_TAG="{version}"')

    def script_name(self, run_id: str, version: str) -> str:
        return f"{self.settings.script_name_prefix}-{run_id}-{version}"

    def instance_name(self, run_id: str, version: str) -> str:
        return f"{run_id}-{version}"

    def build_bootstrap_script(self, script: str, branch: str, run_id: str, version: str) -> ComponentSpec:
        return ComponentSpec(
            schema_name=self.settings.script_schema,
            name=self.script_name(run_id, version),
            attributes={
                "/domain/userdataContent": script,
                "/si/tags": {"Key": "Branch", "Value": branch},
            },
            view_name=self.settings.view_name,
        )

    def build_instance(self, version: str, branch: str, script_name: str, run_id: str) -> ComponentSpec:
        s = self.settings
        attributes = {
            "/domain/InstanceType": s.instance_type,
            "/domain/BlockDeviceMappings/0": {
                "DeviceName": s.root_device_name,
                "Ebs": {
                    "DeleteOnTermination": True,
                    "VolumeSize": s.volume_size,
                    "VolumeType": s.volume_type,
                },
            },
            "/domain/Tags/0": {"Key": "Name", "Value": f"{s.instance_tag_prefix}-{version}"},
            "/domain/Tags/1": {"Key": "Version", "Value": version},
            "/domain/Tags/2": {"Key": "Branch", "Value": branch},
            "/domain/SecurityGroupIds/0": source_ref(s.security_group, "/resource_value/GroupId"),
            "/domain/ImageId": source_ref(s.image, "/domain/ImageId"),
            "/domain/SubnetId": source_ref(s.subnet, "/resource_value/SubnetId"),
            "/domain/KeyName": source_ref(s.key_pair, "/domain/KeyName"),
            "/domain/extra/Region": source_ref(s.region, "/domain/region"),
            "/domain/UserData": source_ref(script_name, "/domain/userdataContentBase64"),
            "/domain/IamInstanceProfile": source_ref(s.instance_profile, "/domain/InstanceProfileName"),
            "/secrets/AWS Credential": source_ref(s.credential, "/secrets/AWS Credential"),
        }
        return ComponentSpec(
            schema_name=s.instance_schema,
            name=self.instance_name(run_id, version),
            attributes=attributes,
            view_name=s.view_name,
        )

    def build(self, version: str, branch: str, run_id: str, template: str) -> EnvironmentGraph:
        """Render the template and build both component payloads."""
        script = self.render_bootstrap_script(template, version)
        bootstrap = self.build_bootstrap_script(script, branch, run_id, version)
        instance = self.build_instance(version, branch, bootstrap.name, run_id)
        return EnvironmentGraph(bootstrap_script=bootstrap, instance=instance)
