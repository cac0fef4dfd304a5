"""
This module defines the data structures for a topology file.

A topology is a flat list of resource records plus the naming and placement
settings shared by all of them. The dataclasses are filled from YAML by
`load_config` and consumed by both the static validator and the builder.
"""

import yaml
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

REQUIRED_KEYS = ["team", "service", "environment", "region"]


@dataclass
class AWSResource:
    name: str
    type: str
    args: Dict[str, Any] = field(default_factory=dict)
    custom_name: Optional[str] = None
    depends_on: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AWSResource":
        if not isinstance(data, dict):
            raise ValueError(f"Resource entry must be a mapping, got {type(data).__name__}")
        for key in ("name", "type"):
            if not data.get(key):
                raise ValueError(f"Resource entry is missing '{key}': {data}")
        args = data.get("args") or {}
        if not isinstance(args, dict):
            raise ValueError(f"Resource '{data['name']}' args must be a mapping")
        depends_on = data.get("depends_on") or []
        if isinstance(depends_on, str):
            depends_on = [depends_on]
        return cls(
            name=str(data["name"]),
            type=str(data["type"]),
            args=dict(args),
            custom_name=data.get("custom_name"),
            depends_on=list(depends_on),
        )


@dataclass
class Config:
    team: str
    service: str
    environment: str
    region: str
    tags: Dict[str, str] = field(default_factory=dict)
    aws_resources: List[AWSResource] = field(default_factory=list)
    exports: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        if not isinstance(data, dict):
            raise ValueError("Configuration must be a mapping")
        # Ensure required keys exist
        for key in REQUIRED_KEYS:
            if key not in data:
                raise ValueError(f"Missing required configuration key: {key}")

        resources = [AWSResource.from_dict(entry) for entry in data.get("aws_resources") or []]
        seen = set()
        for res in resources:
            if res.name in seen:
                raise ValueError(f"Duplicate resource name: {res.name}")
            seen.add(res.name)

        return cls(
            team=str(data["team"]),
            service=str(data["service"]),
            environment=str(data["environment"]),
            region=str(data["region"]),
            tags=dict(data.get("tags") or {}),
            aws_resources=resources,
            exports=dict(data.get("exports") or {}),
        )

    def resource(self, name: str) -> Optional[AWSResource]:
        for res in self.aws_resources:
            if res.name == name:
                return res
        return None


def load_config(file_path: str) -> Config:
    """Load and parse a topology YAML file."""
    with open(file_path, "r") as file:
        config_data = yaml.safe_load(file)
    return Config.from_dict(config_data or {})
