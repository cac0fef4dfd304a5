"""
Static checks for topology files.

These are the properties that can be verified before anything is sent to
the provider: references resolve, scaling bounds are consistent, required
blocks are present and enumerated values are ones AWS accepts. Values that
are only known at deploy time (`ref:`, `secret:`, `config:`) are skipped by
the literal checks.
"""

import argparse
import ipaddress
import re
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Union

from awstopology import REF_PREFIX, dependency_order, find_references, is_reference, parse_reference
from config import AWSResource, Config, load_config

TYPE_PATTERN = re.compile(r"^[a-z0-9_]+\.[A-Z][A-Za-z0-9]*$")

# Dotted paths point into nested blocks
REQUIRED_ARGS: Dict[str, List[str]] = {
    "ec2.Vpc": ["cidr_block"],
    "ec2.Subnet": ["vpc_id", "cidr_block"],
    "ec2.InternetGateway": ["vpc_id"],
    "ec2.RouteTable": ["vpc_id"],
    "ec2.RouteTableAssociation": ["route_table_id"],
    "ec2.SecurityGroup": ["vpc_id"],
    "ec2.LaunchTemplate": ["image_id", "instance_type"],
    "iam.Role": ["assume_role_policy"],
    "iam.RolePolicyAttachment": ["role", "policy_arn"],
    "eks.Cluster": ["role_arn", "vpc_config", "vpc_config.subnet_ids"],
    "eks.NodeGroup": [
        "cluster_name",
        "node_role_arn",
        "subnet_ids",
        "scaling_config",
        "scaling_config.desired_size",
        "scaling_config.min_size",
        "scaling_config.max_size",
    ],
    "wafv2.WebAcl": ["scope", "default_action", "visibility_config"],
    "s3.BucketPolicy": ["bucket", "policy"],
    "cloudfront.Distribution": [
        "enabled",
        "origins",
        "default_cache_behavior",
        "default_cache_behavior.target_origin_id",
        "default_cache_behavior.viewer_protocol_policy",
        "default_cache_behavior.allowed_methods",
        "default_cache_behavior.cached_methods",
        "restrictions",
        "viewer_certificate",
    ],
    "lb.LoadBalancer": ["subnets"],
    "lb.TargetGroup": ["port", "protocol", "vpc_id"],
    "lb.Listener": ["load_balancer_arn", "default_actions"],
    "autoscaling.Group": ["min_size", "max_size"],
    "autoscaling.Policy": ["autoscaling_group_name"],
}

DESIRED_KEYS = ("desired_size", "desired_capacity")

VIEWER_PROTOCOL_POLICIES = {"allow-all", "https-only", "redirect-to-https"}
ALLOWED_METHOD_SETS = [
    {"GET", "HEAD"},
    {"GET", "HEAD", "OPTIONS"},
    {"DELETE", "GET", "HEAD", "OPTIONS", "PATCH", "POST", "PUT"},
]
CACHED_METHOD_SETS = [
    {"GET", "HEAD"},
    {"GET", "HEAD", "OPTIONS"},
]

LISTENER_ACTION_TYPES = {"forward", "redirect", "fixed-response", "authenticate-cognito", "authenticate-oidc"}

WAF_SCOPES = {"REGIONAL", "CLOUDFRONT"}
WAF_GROUP_STATEMENTS = {"managed_rule_group_statement", "rule_group_reference_statement"}


@dataclass(frozen=True)
class ValidationIssue:
    resource: str
    message: str

    def __str__(self) -> str:
        return f"{self.resource}: {self.message}"


class ConfigValidationError(ValueError):
    """Raised when a topology has static validation findings."""

    def __init__(self, issues: List[ValidationIssue]):
        self.issues = list(issues)
        lines = "\n".join(f"  - {issue}" for issue in self.issues)
        super().__init__(f"Topology has {len(self.issues)} validation issue(s):\n{lines}")


def get_path(args: Dict[str, Any], path: str) -> Any:
    current: Any = args
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return None
        current = current[part]
    return current


def iter_dicts(value: Any) -> Iterator[Dict[str, Any]]:
    if isinstance(value, dict):
        yield value
        for item in value.values():
            yield from iter_dicts(item)
    elif isinstance(value, list):
        for item in value:
            yield from iter_dicts(item)


def is_literal_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _referenced_name(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.startswith(REF_PREFIX):
        return parse_reference(value[len(REF_PREFIX):])[0]
    return None


def _is_lookup(res: AWSResource) -> bool:
    return bool(res.args.get("existing", False))


def check_types(config: Config) -> List[ValidationIssue]:
    issues = []
    for res in config.aws_resources:
        if not TYPE_PATTERN.match(res.type):
            issues.append(ValidationIssue(res.name, f"type '{res.type}' is not of the form <module>.<Class>"))
    return issues


def check_references(config: Config) -> List[ValidationIssue]:
    declared = {res.name for res in config.aws_resources}
    issues = []
    for res in config.aws_resources:
        for ref_res, ref_attr in find_references(res.args):
            if ref_res == res.name:
                issues.append(ValidationIssue(res.name, "references itself"))
            elif ref_res not in declared:
                issues.append(ValidationIssue(res.name, f"references undeclared resource '{ref_res}' (attribute '{ref_attr}')"))
        for dep in res.depends_on:
            if dep == res.name:
                issues.append(ValidationIssue(res.name, "depends on itself"))
            elif dep not in declared:
                issues.append(ValidationIssue(res.name, f"depends on undeclared resource '{dep}'"))
    try:
        dependency_order(config)
    except ValueError as e:
        issues.append(ValidationIssue("<topology>", str(e)))
    return issues


def check_required_args(config: Config) -> List[ValidationIssue]:
    issues = []
    for res in config.aws_resources:
        if _is_lookup(res):
            continue
        for path in REQUIRED_ARGS.get(res.type, []):
            if get_path(res.args, path) is None:
                issues.append(ValidationIssue(res.name, f"missing required argument '{path}'"))
    return issues


def check_scaling(config: Config) -> List[ValidationIssue]:
    """min <= desired <= max wherever a block carries scaling bounds."""
    issues = []
    for res in config.aws_resources:
        for block in iter_dicts(res.args):
            if "min_size" not in block or "max_size" not in block:
                continue
            bounds = {key: block[key] for key in ("min_size", "max_size", *DESIRED_KEYS) if key in block}
            literal = {}
            for key, value in bounds.items():
                if is_reference(value):
                    continue
                if not is_literal_int(value) or value < 0:
                    issues.append(ValidationIssue(res.name, f"'{key}' must be a non-negative integer, got {value!r}"))
                    continue
                literal[key] = value
            low, high = literal.get("min_size"), literal.get("max_size")
            if low is not None and high is not None and low > high:
                issues.append(ValidationIssue(res.name, f"min_size {low} is greater than max_size {high}"))
            for key in DESIRED_KEYS:
                desired = literal.get(key)
                if desired is None:
                    continue
                if low is not None and desired < low:
                    issues.append(ValidationIssue(res.name, f"{key} {desired} is below min_size {low}"))
                if high is not None and desired > high:
                    issues.append(ValidationIssue(res.name, f"{key} {desired} is above max_size {high}"))
    return issues


def _parse_network(res: AWSResource, value: Any, issues: List[ValidationIssue]) -> Optional[Union[ipaddress.IPv4Network, ipaddress.IPv6Network]]:
    if not isinstance(value, str) or is_reference(value):
        return None
    try:
        return ipaddress.ip_network(value)
    except ValueError:
        issues.append(ValidationIssue(res.name, f"invalid CIDR block '{value}'"))
        return None


def check_networks(config: Config) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    vpc_blocks = {}
    for res in config.aws_resources:
        for block in iter_dicts(res.args):
            for key in ("cidr_block", "cidr_blocks"):
                values = block.get(key)
                if values is None:
                    continue
                for value in values if isinstance(values, list) else [values]:
                    network = _parse_network(res, value, issues)
                    if network is not None and res.type == "ec2.Vpc" and block is res.args:
                        vpc_blocks[res.name] = network

    subnets_by_vpc: Dict[str, List[tuple]] = {}
    for res in config.aws_resources:
        if res.type != "ec2.Subnet":
            continue
        vpc_name = _referenced_name(res.args.get("vpc_id"))
        cidr = res.args.get("cidr_block")
        if vpc_name not in vpc_blocks or not isinstance(cidr, str) or is_reference(cidr):
            continue
        try:
            network = ipaddress.ip_network(cidr)
        except ValueError:
            continue
        vpc_network = vpc_blocks[vpc_name]
        if network.version != vpc_network.version or not network.subnet_of(vpc_network):
            issues.append(ValidationIssue(res.name, f"subnet {network} is outside VPC '{vpc_name}' block {vpc_network}"))
            continue
        for other_name, other_network in subnets_by_vpc.get(vpc_name, []):
            if network.overlaps(other_network):
                issues.append(ValidationIssue(res.name, f"subnet {network} overlaps '{other_name}' ({other_network})"))
        subnets_by_vpc.setdefault(vpc_name, []).append((res.name, network))
    return issues


def check_listeners(config: Config) -> List[ValidationIssue]:
    issues = []
    for res in config.aws_resources:
        if res.type not in ("lb.Listener", "lb.ListenerRule"):
            continue
        actions = res.args.get("default_actions" if res.type == "lb.Listener" else "actions")
        if actions is None:
            continue
        if not isinstance(actions, list) or not actions:
            issues.append(ValidationIssue(res.name, "listener needs at least one action"))
            continue
        for action in actions:
            action_type = action.get("type") if isinstance(action, dict) else None
            if action_type not in LISTENER_ACTION_TYPES:
                issues.append(ValidationIssue(res.name, f"unknown listener action type {action_type!r}"))
                continue
            if action_type == "forward" and not (action.get("target_group_arn") or action.get("forward")):
                issues.append(ValidationIssue(res.name, "forward action does not name a target group"))
    return issues


def _check_method_list(res: AWSResource, label: str, values: Any, allowed: List[set], issues: List[ValidationIssue]) -> Optional[set]:
    if not isinstance(values, list) or any(is_reference(v) for v in values):
        return None
    methods = set(values)
    if methods not in allowed:
        issues.append(ValidationIssue(res.name, f"{label} {sorted(methods)} is not a permitted method set"))
    return methods


def _check_cache_behavior(res: AWSResource, label: str, behavior: Any, origin_ids: set, issues: List[ValidationIssue]) -> None:
    if not isinstance(behavior, dict):
        return
    policy = behavior.get("viewer_protocol_policy")
    if policy is not None and not is_reference(policy) and policy not in VIEWER_PROTOCOL_POLICIES:
        issues.append(ValidationIssue(res.name, f"{label} viewer_protocol_policy '{policy}' is not one of {sorted(VIEWER_PROTOCOL_POLICIES)}"))
    allowed = _check_method_list(res, f"{label} allowed_methods", behavior.get("allowed_methods"), ALLOWED_METHOD_SETS, issues)
    cached = _check_method_list(res, f"{label} cached_methods", behavior.get("cached_methods"), CACHED_METHOD_SETS, issues)
    if allowed is not None and cached is not None and not cached <= allowed:
        issues.append(ValidationIssue(res.name, f"{label} cached_methods must be a subset of allowed_methods"))
    target = behavior.get("target_origin_id")
    if origin_ids and isinstance(target, str) and not is_reference(target) and target not in origin_ids:
        issues.append(ValidationIssue(res.name, f"{label} targets unknown origin '{target}'"))


def check_distributions(config: Config) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for res in config.aws_resources:
        if res.type != "cloudfront.Distribution":
            continue
        origins = res.args.get("origins") or []
        if not isinstance(origins, list) or not origins:
            issues.append(ValidationIssue(res.name, "distribution needs at least one origin"))
            origins = []
        origin_ids = set()
        for origin in origins:
            origin_id = origin.get("origin_id") if isinstance(origin, dict) else None
            if not origin_id:
                issues.append(ValidationIssue(res.name, "origin is missing origin_id"))
            elif origin_id in origin_ids:
                issues.append(ValidationIssue(res.name, f"duplicate origin_id '{origin_id}'"))
            else:
                origin_ids.add(origin_id)
        _check_cache_behavior(res, "default_cache_behavior", res.args.get("default_cache_behavior"), origin_ids, issues)
        for index, behavior in enumerate(res.args.get("ordered_cache_behaviors") or []):
            label = f"ordered_cache_behaviors[{index}]"
            if isinstance(behavior, dict) and not behavior.get("path_pattern"):
                issues.append(ValidationIssue(res.name, f"{label} is missing path_pattern"))
            _check_cache_behavior(res, label, behavior, origin_ids, issues)
        certificate = res.args.get("viewer_certificate")
        if isinstance(certificate, dict):
            sources = [certificate.get(key) for key in ("cloudfront_default_certificate", "acm_certificate_arn", "iam_certificate_id")]
            if not any(sources):
                issues.append(ValidationIssue(res.name, "viewer_certificate names no certificate source"))
    return issues


def check_web_acls(config: Config) -> List[ValidationIssue]:
    issues = []
    for res in config.aws_resources:
        if res.type != "wafv2.WebAcl" or _is_lookup(res):
            continue
        scope = res.args.get("scope")
        if scope is not None and not is_reference(scope):
            if scope not in WAF_SCOPES:
                issues.append(ValidationIssue(res.name, f"scope '{scope}' is not one of {sorted(WAF_SCOPES)}"))
            region = res.args.get("region", config.region)
            if scope == "CLOUDFRONT" and region != "us-east-1":
                issues.append(ValidationIssue(res.name, f"CLOUDFRONT scoped web ACLs must be created in us-east-1, not {region}"))
        default_action = res.args.get("default_action")
        if isinstance(default_action, dict):
            chosen = [key for key in ("allow", "block") if key in default_action]
            if len(chosen) != 1:
                issues.append(ValidationIssue(res.name, "default_action must set exactly one of allow or block"))
        priorities = {}
        for rule in res.args.get("rules") or []:
            if not isinstance(rule, dict):
                continue
            rule_name = rule.get("name", "<unnamed>")
            if not rule.get("name"):
                issues.append(ValidationIssue(res.name, "rule is missing a name"))
            if "visibility_config" not in rule:
                issues.append(ValidationIssue(res.name, f"rule '{rule_name}' is missing visibility_config"))
            priority = rule.get("priority")
            if not is_literal_int(priority):
                issues.append(ValidationIssue(res.name, f"rule '{rule_name}' needs an integer priority"))
            elif priority in priorities:
                issues.append(ValidationIssue(res.name, f"rule '{rule_name}' reuses priority {priority} of '{priorities[priority]}'"))
            else:
                priorities[priority] = rule_name
            statement = rule.get("statement") or {}
            uses_group = any(key in statement for key in WAF_GROUP_STATEMENTS)
            if uses_group and "override_action" not in rule:
                issues.append(ValidationIssue(res.name, f"rule '{rule_name}' uses a rule group and needs override_action"))
            if not uses_group and "action" not in rule:
                issues.append(ValidationIssue(res.name, f"rule '{rule_name}' needs an action"))
    return issues


def check_exports(config: Config) -> List[ValidationIssue]:
    declared = {res.name for res in config.aws_resources}
    issues = []
    for export_name, value in config.exports.items():
        if export_name in declared:
            issues.append(ValidationIssue(f"exports.{export_name}", f"name collides with the id output of resource '{export_name}'"))
        refs = find_references(value)
        if not refs:
            issues.append(ValidationIssue(f"exports.{export_name}", "export must reference a resource"))
        for ref_res, _ in refs:
            if ref_res not in declared:
                issues.append(ValidationIssue(f"exports.{export_name}", f"references undeclared resource '{ref_res}'"))
    return issues


CHECKS = [
    check_types,
    check_references,
    check_required_args,
    check_scaling,
    check_networks,
    check_listeners,
    check_distributions,
    check_web_acls,
    check_exports,
]


def validate_config(config: Config) -> List[ValidationIssue]:
    issues: List[ValidationIssue] = []
    for check in CHECKS:
        issues.extend(check(config))
    return issues


def ensure_valid(config: Config) -> Config:
    issues = validate_config(config)
    if issues:
        raise ConfigValidationError(issues)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Statically validate topology files.")
    parser.add_argument("files", nargs="+", help="topology YAML files")
    options = parser.parse_args(argv)

    failed = False
    for path in options.files:
        try:
            issues = validate_config(load_config(path))
        except (OSError, ValueError) as e:
            print(f"{path}: {e}", file=sys.stderr)
            failed = True
            continue
        for issue in issues:
            print(f"{path}: {issue}", file=sys.stderr)
        if issues:
            failed = True
        else:
            print(f"{path}: ok")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
