import pulumi
import pulumi_aws as aws
import graphlib
import inspect
import re
from typing import Any, Dict, List, Optional, Tuple

from config import AWSResource, Config

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-gov-east-1": "usge1",
    "us-gov-west-1": "usgw1",
    "cn-north-1": "cnn1",
    "cn-northwest-1": "cnnw1",
}

REF_PREFIX = "ref:"
SECRET_PREFIX = "secret:"
CONFIG_PREFIX = "config:"

# ${name} or ${name.attr}; IAM policy variables such as ${aws:username} do not match.
# $${...} is an escaped literal and resolves to ${...}
INTERPOLATION_PATTERN = re.compile(r"(?<!\$)\$\{([A-Za-z0-9_-]+)(?:\.([A-Za-z0-9_]+))?\}")
ESCAPED_INTERPOLATION = "$${"

# Resource types whose `tags` argument is a list of tag blocks instead of a map
TAG_BLOCK_TYPES = {"autoscaling.Group"}


def to_snake_case(name: str) -> str:
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()


def parse_reference(ref_text: str) -> Tuple[str, str]:
    if "." in ref_text:
        ref_res, ref_attr = ref_text.split(".", 1)
    else:
        ref_res, ref_attr = ref_text, "id"
    return ref_res, ref_attr


def is_reference(value: Any) -> bool:
    """True for values that only become known at deploy time."""
    if not isinstance(value, str):
        return False
    if value.startswith((REF_PREFIX, SECRET_PREFIX, CONFIG_PREFIX)):
        return True
    return INTERPOLATION_PATTERN.search(value) is not None


def find_references(value: Any) -> List[Tuple[str, str]]:
    """Collect every (resource, attribute) pair referenced inside a value tree."""
    found: List[Tuple[str, str]] = []
    if isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    elif isinstance(value, list):
        for item in value:
            found.extend(find_references(item))
    elif isinstance(value, str):
        if value.startswith(REF_PREFIX):
            found.append(parse_reference(value[len(REF_PREFIX):]))
        else:
            for match in INTERPOLATION_PATTERN.finditer(value):
                found.append((match.group(1), match.group(2) or "id"))
    return found


def lookup_attribute(ref_res: str, ref_attr: str, resources: Dict[str, Any]) -> Any:
    if ref_res not in resources:
        raise ValueError(f"Referenced resource '{ref_res}' not found.")
    resource_obj = resources[ref_res]
    attr_val = getattr(resource_obj, ref_attr, None)
    if attr_val is None:
        raise ValueError(f"Attribute '{ref_attr}' not found on resource '{ref_res}'")
    return attr_val


def unescape(value: str) -> str:
    return value.replace(ESCAPED_INTERPOLATION, "${")


def interpolate(value: str, resources: Dict[str, Any]) -> Any:
    parts: List[Any] = []
    position = 0
    for match in INTERPOLATION_PATTERN.finditer(value):
        if match.start() > position:
            parts.append(unescape(value[position:match.start()]))
        parts.append(lookup_attribute(match.group(1), match.group(2) or "id", resources))
        position = match.end()
    if position < len(value):
        parts.append(unescape(value[position:]))
    return pulumi.Output.concat(*parts)


def resolve_value(value: Any, resources: Dict[str, Any]) -> Any:
    if isinstance(value, dict):
        return {k: resolve_value(v, resources) for k, v in value.items()}
    elif isinstance(value, list):
        return [resolve_value(item, resources) for item in value]
    elif isinstance(value, str):
        if value.startswith(SECRET_PREFIX):
            # Fetch secret from Pulumi config
            secret_key = value[len(SECRET_PREFIX):]
            config = pulumi.Config()
            return config.require_secret(secret_key)
        elif value.startswith(CONFIG_PREFIX):
            config = pulumi.Config()
            return config.require(value[len(CONFIG_PREFIX):])
        elif value.startswith(REF_PREFIX):
            ref_res, ref_attr = parse_reference(value[len(REF_PREFIX):])
            return lookup_attribute(ref_res, ref_attr, resources)
        elif INTERPOLATION_PATTERN.search(value):
            return interpolate(value, resources)
        else:
            return unescape(value)
    else:
        return value


def resource_dependencies(resource_cfg: AWSResource) -> List[str]:
    """Logical names a record needs before it can be built, without duplicates."""
    names: List[str] = []
    for ref_res, _ in find_references(resource_cfg.args):
        if ref_res not in names:
            names.append(ref_res)
    for dep in resource_cfg.depends_on:
        if dep not in names:
            names.append(dep)
    return names


def dependency_order(config: Config) -> List[AWSResource]:
    """
    Order resource records so every dependency is built before its dependants.

    Records with no ordering constraint between them keep their declaration
    order. Dependencies on names that are not declared are left to the
    resolver, which reports them when the value is resolved.
    """
    position = {res.name: index for index, res in enumerate(config.aws_resources)}
    sorter = graphlib.TopologicalSorter()
    for res in config.aws_resources:
        deps = [dep for dep in resource_dependencies(res) if dep in position and dep != res.name]
        sorter.add(res.name, *deps)
    try:
        sorter.prepare()
    except graphlib.CycleError as e:
        cycle = " -> ".join(e.args[1])
        raise ValueError(f"Dependency cycle between resources: {cycle}") from e

    ordered: List[AWSResource] = []
    while sorter.is_active():
        ready = sorted(sorter.get_ready(), key=lambda name: position[name])
        for name in ready:
            ordered.append(config.aws_resources[position[name]])
            sorter.done(name)
    return ordered


def get_lookup_params(lookup_sig: inspect.Signature, resolved_args: dict) -> dict:
    lookup_params = {}
    for param in lookup_sig.parameters:
        if param == "opts":
            continue
        snake_key = to_snake_case(param)
        if snake_key in resolved_args:
            lookup_params[param] = resolved_args[snake_key]
        elif param in resolved_args:
            lookup_params[param] = resolved_args[param]
    return lookup_params


def constructor_signature(resource_class: type) -> inspect.Signature:
    # Generated SDK classes expose their keyword arguments on _internal_init;
    # __init__ itself is only (*args, **kwargs).
    init = getattr(resource_class, "_internal_init", resource_class.__init__)
    return inspect.signature(init)


class AWSResourceBuilder:
    def __init__(self, config: Config):
        self.config = config
        self.resources: Dict[str, Any] = {}

    def get_abbreviation(self, region: str) -> str:
        return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())

    def generate_resource_name(self, base_name: str) -> str:
        team = (self.config.team or "team").strip().lower()
        service = (self.config.service or "svc").strip().lower()
        env = (self.config.environment or "dev").strip().lower()
        reg_abbr = self.get_abbreviation(self.config.region or "us-east-1")
        return f"{team}-{service}-{env}-{reg_abbr}-{base_name}".lower()

    def resolve_args(self, args: dict) -> dict:
        return {key: resolve_value(value, self.resources) for key, value in args.items()}

    def _merge_tags(self, resource_type: str, resolved_args: dict) -> None:
        common_tags = self.config.tags
        if not common_tags:
            return
        own_tags = resolved_args.get("tags")
        if resource_type in TAG_BLOCK_TYPES:
            own_tags = list(own_tags or [])
            declared = {block.get("key") for block in own_tags if isinstance(block, dict)}
            for key, value in common_tags.items():
                if key not in declared:
                    own_tags.append({"key": key, "value": value, "propagate_at_launch": True})
            resolved_args["tags"] = own_tags
        elif own_tags is None or isinstance(own_tags, dict):
            resolved_args["tags"] = {**common_tags, **(own_tags or {})}

    def _apply_common_parameters(self, resource_type: str, resolved_args: dict, init_sig: inspect.Signature) -> dict:
        if "tags" in init_sig.parameters:
            self._merge_tags(resource_type, resolved_args)
        else:
            resolved_args.pop("tags", None)
        if "region" in init_sig.parameters:
            if "region" not in resolved_args:
                resolved_args["region"] = self.config.region or "us-east-1"
        else:
            resolved_args.pop("region", None)
        return resolved_args

    def _resource_options(self, resource_cfg: AWSResource) -> Optional[pulumi.ResourceOptions]:
        if not resource_cfg.depends_on:
            return None
        depends_on = []
        for dep in resource_cfg.depends_on:
            if dep not in self.resources:
                raise ValueError(f"Resource '{resource_cfg.name}' depends on unknown resource '{dep}'")
            dependency = self.resources[dep]
            # Looked-up resources are plain results, not resources Pulumi can wait on
            if isinstance(dependency, pulumi.Resource):
                depends_on.append(dependency)
        return pulumi.ResourceOptions(depends_on=depends_on)

    def _lookup_existing(self, module: Any, class_name: str, resource_cfg: AWSResource, resolved_args: dict) -> bool:
        name = resource_cfg.name
        get_func_name = f"get_{to_snake_case(class_name)}"
        try:
            get_func = getattr(module, get_func_name)
            sig = inspect.signature(get_func)
            get_required = {k for k, param in sig.parameters.items() if k not in {"opts"} and param.default == param.empty}
            get_params = get_lookup_params(sig, resolved_args)
            missing = get_required - set(get_params.keys())
            if missing:
                pulumi.log.warn(f"Missing required params {missing} for existing resource '{name}'. Skipping the lookup attempt.")
                return False
            self.resources[name] = get_func(**get_params)
            pulumi.log.info(f"Fetched existing resource '{name}' via '{get_func_name}' with {sorted(get_params)}")
            return True
        except AttributeError:
            pulumi.log.warn(f"Function '{get_func_name}' not found for '{resource_cfg.type}'. Proceeding to create new resource '{name}'.")
        except Exception as e:
            pulumi.log.warn(f"Failed to retrieve existing resource '{name}': {e}. Proceeding with creation.")
        return False

    def build(self):
        for resource_cfg in dependency_order(self.config):
            name = resource_cfg.name
            resource_type = resource_cfg.type
            args = dict(resource_cfg.args)
            is_existing = args.pop("existing", False)
            resolved_args = self.resolve_args(args)
            module_name, class_name = resource_type.rsplit(".", 1)
            module = getattr(aws, module_name, None)
            if not module:
                pulumi.log.warn(f"AWS module '{module_name}' not found. Skipping '{name}'.")
                continue
            try:
                ResourceClass = getattr(module, class_name)
            except AttributeError:
                pulumi.log.warn(f"Resource class '{class_name}' not found in module '{module_name}'. Skipping '{name}'.")
                continue
            if is_existing and self._lookup_existing(module, class_name, resource_cfg, resolved_args):
                continue
            init_sig = constructor_signature(ResourceClass)
            resolved_args = self._apply_common_parameters(resource_type, resolved_args, init_sig)
            pulumi_name = resource_cfg.custom_name or self.generate_resource_name(name)
            opts = self._resource_options(resource_cfg)
            pulumi.log.debug(f"Resolved args for '{name}': {sorted(resolved_args)}")
            resource_instance = ResourceClass(pulumi_name, opts=opts, **resolved_args)
            self.resources[name] = resource_instance
            pulumi.log.info(f"Created resource: {pulumi_name} ({resource_type})")

    def exports(self) -> Dict[str, Any]:
        outputs: Dict[str, Any] = {}
        for name, resource in self.resources.items():
            resource_id = getattr(resource, "id", None)
            if resource_id is not None:
                outputs[name] = resource_id
        for export_name, ref in self.config.exports.items():
            try:
                outputs[export_name] = resolve_value(ref, self.resources)
            except ValueError as e:
                pulumi.log.warn(f"Failed to resolve export '{export_name}': {e}")
        return outputs
