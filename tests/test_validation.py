import pytest

from validation import ConfigValidationError, ensure_valid, validate_config

from .conftest import make_config


def messages(config):
    return [str(issue) for issue in validate_config(config)]


def node_group(**scaling):
    return {
        "name": "nodes",
        "type": "eks.NodeGroup",
        "args": {
            "cluster_name": "demo",
            "node_role_arn": "arn:aws:iam::123456789012:role/nodes",
            "subnet_ids": ["subnet-1"],
            "scaling_config": scaling,
        },
    }


def distribution(**behavior):
    default_cache_behavior = {
        "target_origin_id": "site",
        "viewer_protocol_policy": "redirect-to-https",
        "allowed_methods": ["GET", "HEAD"],
        "cached_methods": ["GET", "HEAD"],
    }
    default_cache_behavior.update(behavior)
    return {
        "name": "cdn",
        "type": "cloudfront.Distribution",
        "args": {
            "enabled": True,
            "origins": [{"origin_id": "site", "domain_name": "site.s3.amazonaws.com"}],
            "default_cache_behavior": default_cache_behavior,
            "restrictions": {"geo_restriction": {"restriction_type": "none"}},
            "viewer_certificate": {"cloudfront_default_certificate": True},
        },
    }


def web_acl(rules, scope="REGIONAL", default_action=None):
    return {
        "name": "acl",
        "type": "wafv2.WebAcl",
        "args": {
            "scope": scope,
            "default_action": default_action or {"allow": {}},
            "rules": rules,
            "visibility_config": {
                "cloudwatch_metrics_enabled": True,
                "metric_name": "acl",
                "sampled_requests_enabled": True,
            },
        },
    }


def waf_rule(name, priority, **extra):
    rule = {
        "name": name,
        "priority": priority,
        "action": {"block": {}},
        "statement": {"rate_based_statement": {"limit": 1000}},
        "visibility_config": {"cloudwatch_metrics_enabled": False, "metric_name": name, "sampled_requests_enabled": False},
    }
    rule.update(extra)
    return rule


def test_clean_config_has_no_issues():
    config = make_config(
        {"name": "vpc", "type": "ec2.Vpc", "args": {"cidr_block": "10.0.0.0/16"}},
        {"name": "subnet", "type": "ec2.Subnet", "args": {"vpc_id": "ref:vpc", "cidr_block": "10.0.1.0/24"}},
        exports={"vpc_id": "ref:vpc"},
    )
    assert validate_config(config) == []
    assert ensure_valid(config) is config


def test_undeclared_reference():
    config = make_config({"name": "subnet", "type": "ec2.Subnet", "args": {"vpc_id": "ref:vpc", "cidr_block": "10.0.1.0/24"}})
    assert messages(config) == ["subnet: references undeclared resource 'vpc' (attribute 'id')"]


def test_self_reference():
    config = make_config({"name": "sg", "type": "ec2.SecurityGroup", "args": {"vpc_id": "vpc-1", "ingress": [{"security_groups": ["ref:sg"]}]}})
    assert messages(config) == ["sg: references itself"]


def test_undeclared_depends_on():
    config = make_config({"name": "bucket", "type": "s3.Bucket", "depends_on": ["ghost"]})
    assert messages(config) == ["bucket: depends on undeclared resource 'ghost'"]


def test_cycle_reported():
    config = make_config(
        {"name": "a", "type": "s3.Bucket", "depends_on": ["b"]},
        {"name": "b", "type": "s3.Bucket", "depends_on": ["a"]},
    )
    found = messages(config)
    assert len(found) == 1
    assert found[0].startswith("<topology>: Dependency cycle between resources")


def test_malformed_type():
    config = make_config({"name": "vpc", "type": "Vpc"})
    assert messages(config) == ["vpc: type 'Vpc' is not of the form <module>.<Class>"]


def test_missing_required_blocks():
    config = make_config({"name": "listener", "type": "lb.Listener", "args": {"port": 80}})
    assert messages(config) == [
        "listener: missing required argument 'load_balancer_arn'",
        "listener: missing required argument 'default_actions'",
    ]


def test_missing_nested_required_block():
    config = make_config(node_group(desired_size=1, min_size=1))
    assert "nodes: missing required argument 'scaling_config.max_size'" in messages(config)


def test_lookups_skip_required_blocks():
    config = make_config({"name": "vpc", "type": "ec2.Vpc", "args": {"existing": True, "id": "vpc-123"}})
    assert validate_config(config) == []


@pytest.mark.parametrize(
    "scaling, expected",
    [
        ({"desired_size": 2, "min_size": 3, "max_size": 4}, "nodes: desired_size 2 is below min_size 3"),
        ({"desired_size": 5, "min_size": 1, "max_size": 4}, "nodes: desired_size 5 is above max_size 4"),
        ({"desired_size": 2, "min_size": 5, "max_size": 4}, "nodes: min_size 5 is greater than max_size 4"),
        ({"desired_size": 2, "min_size": -1, "max_size": 4}, "nodes: 'min_size' must be a non-negative integer, got -1"),
        ({"desired_size": "2", "min_size": 1, "max_size": 4}, "nodes: 'desired_size' must be a non-negative integer, got '2'"),
    ],
)
def test_node_group_scaling_bounds(scaling, expected):
    assert expected in messages(make_config(node_group(**scaling)))


def test_autoscaling_group_bounds():
    config = make_config(
        {"name": "asg", "type": "autoscaling.Group", "args": {"desired_capacity": 6, "min_size": 1, "max_size": 4}}
    )
    assert messages(config) == ["asg: desired_capacity 6 is above max_size 4"]


def test_scaling_bounds_from_config_are_skipped():
    config = make_config(node_group(desired_size="config:desired", min_size=1, max_size=4))
    assert validate_config(config) == []


def test_subnet_outside_vpc():
    config = make_config(
        {"name": "vpc", "type": "ec2.Vpc", "args": {"cidr_block": "10.0.0.0/16"}},
        {"name": "subnet", "type": "ec2.Subnet", "args": {"vpc_id": "ref:vpc.id", "cidr_block": "10.1.0.0/24"}},
    )
    assert messages(config) == ["subnet: subnet 10.1.0.0/24 is outside VPC 'vpc' block 10.0.0.0/16"]


def test_overlapping_subnets():
    config = make_config(
        {"name": "vpc", "type": "ec2.Vpc", "args": {"cidr_block": "10.0.0.0/16"}},
        {"name": "a", "type": "ec2.Subnet", "args": {"vpc_id": "ref:vpc", "cidr_block": "10.0.0.0/23"}},
        {"name": "b", "type": "ec2.Subnet", "args": {"vpc_id": "ref:vpc", "cidr_block": "10.0.1.0/24"}},
    )
    assert messages(config) == ["b: subnet 10.0.1.0/24 overlaps 'a' (10.0.0.0/23)"]


def test_invalid_cidr():
    config = make_config(
        {
            "name": "sg",
            "type": "ec2.SecurityGroup",
            "args": {"vpc_id": "vpc-1", "ingress": [{"cidr_blocks": ["10.0.0.1/16"]}]},
        }
    )
    assert messages(config) == ["sg: invalid CIDR block '10.0.0.1/16'"]


def test_listener_actions():
    config = make_config(
        {
            "name": "listener",
            "type": "lb.Listener",
            "args": {
                "load_balancer_arn": "arn:aws:elasticloadbalancing:us-east-1:123456789012:loadbalancer/app/web/1",
                "default_actions": [{"type": "forward"}, {"type": "teleport"}],
            },
        }
    )
    assert messages(config) == [
        "listener: forward action does not name a target group",
        "listener: unknown listener action type 'teleport'",
    ]


def test_distribution_is_valid():
    assert validate_config(make_config(distribution())) == []


def test_distribution_viewer_protocol_policy():
    found = messages(make_config(distribution(viewer_protocol_policy="http-only")))
    assert len(found) == 1
    assert "viewer_protocol_policy 'http-only' is not one of" in found[0]


def test_distribution_method_sets():
    found = messages(make_config(distribution(allowed_methods=["GET", "POST"], cached_methods=["GET", "HEAD", "OPTIONS"])))
    assert found == [
        "cdn: default_cache_behavior allowed_methods ['GET', 'POST'] is not a permitted method set",
        "cdn: default_cache_behavior cached_methods must be a subset of allowed_methods",
    ]


def test_distribution_unknown_origin():
    found = messages(make_config(distribution(target_origin_id="api")))
    assert found == ["cdn: default_cache_behavior targets unknown origin 'api'"]


def test_distribution_ordered_behavior_needs_path_pattern():
    cdn = distribution()
    cdn["args"]["ordered_cache_behaviors"] = [dict(cdn["args"]["default_cache_behavior"])]
    assert messages(make_config(cdn)) == ["cdn: ordered_cache_behaviors[0] is missing path_pattern"]


def test_distribution_needs_certificate_source():
    cdn = distribution()
    cdn["args"]["viewer_certificate"] = {"minimum_protocol_version": "TLSv1.2_2021"}
    assert messages(make_config(cdn)) == ["cdn: viewer_certificate names no certificate source"]


def test_web_acl_is_valid():
    assert validate_config(make_config(web_acl([waf_rule("rate", 1)]))) == []


def test_cloudfront_web_acl_outside_us_east_1():
    config = make_config(web_acl([], scope="CLOUDFRONT"), region="eu-west-1")
    assert messages(config) == ["acl: CLOUDFRONT scoped web ACLs must be created in us-east-1, not eu-west-1"]


def test_web_acl_default_action_needs_exactly_one_choice():
    config = make_config(web_acl([], default_action={"allow": {}, "block": {}}))
    assert messages(config) == ["acl: default_action must set exactly one of allow or block"]


def test_web_acl_duplicate_priorities():
    config = make_config(web_acl([waf_rule("first", 1), waf_rule("second", 1)]))
    assert messages(config) == ["acl: rule 'second' reuses priority 1 of 'first'"]


def test_web_acl_rule_group_needs_override_action():
    rule = waf_rule(
        "common",
        1,
        statement={"managed_rule_group_statement": {"name": "AWSManagedRulesCommonRuleSet", "vendor_name": "AWS"}},
    )
    config = make_config(web_acl([rule]))
    assert messages(config) == ["acl: rule 'common' uses a rule group and needs override_action"]


def test_exports_must_reference_declared_resources():
    config = make_config(
        {"name": "vpc", "type": "ec2.Vpc", "args": {"cidr_block": "10.0.0.0/16"}},
        exports={"literal": "hello", "missing": "ref:alb.dns_name"},
    )
    assert messages(config) == [
        "exports.literal: export must reference a resource",
        "exports.missing: references undeclared resource 'alb'",
    ]


def test_ensure_valid_raises_with_all_issues():
    config = make_config({"name": "subnet", "type": "ec2.Subnet", "args": {"vpc_id": "ref:vpc"}})
    with pytest.raises(ConfigValidationError) as excinfo:
        ensure_valid(config)
    assert [str(issue) for issue in excinfo.value.issues] == [
        "subnet: references undeclared resource 'vpc' (attribute 'id')",
        "subnet: missing required argument 'cidr_block'",
    ]
    assert "2 validation issue(s)" in str(excinfo.value)


def test_export_name_must_not_shadow_resource_id():
    config = make_config(
        {"name": "vpc", "type": "ec2.Vpc", "args": {"cidr_block": "10.0.0.0/16"}},
        exports={"vpc": "ref:vpc.cidr_block"},
    )
    assert messages(config) == ["exports.vpc: name collides with the id output of resource 'vpc'"]


def test_escaped_shell_variables_are_not_references():
    config = make_config(
        {
            "name": "template",
            "type": "ec2.LaunchTemplate",
            "args": {"image_id": "ami-1", "instance_type": "t3.micro", "user_data": "echo $${HOME}"},
        }
    )
    assert validate_config(config) == []
