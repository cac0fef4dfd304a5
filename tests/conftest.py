from pathlib import Path
from typing import Any, Dict

import pulumi
import pytest

from config import Config

TOPOLOGY_DIR = Path(__file__).resolve().parent.parent / "topologies"

LOOKED_UP_VPC_ID = "vpc-0123456789abcdef0"
WEB_AMI_ID = "ami-0abcdef1234567890"
BUCKET_POLICY_SECRET = '{"Version": "2012-10-17", "Statement": []}'


class TopologyMocks(pulumi.runtime.Mocks):
    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        outputs = dict(args.inputs)
        outputs.setdefault("arn", f"arn:aws:mock:us-east-1:123456789012:{args.name}")
        outputs.setdefault("name", args.name)
        outputs.setdefault("dnsName", f"{args.name}.elb.amazonaws.com")
        outputs.setdefault("domainName", f"{args.name}.cloudfront.net")
        outputs.setdefault("endpoint", f"https://{args.name}.eks.amazonaws.com")
        outputs.setdefault("iamArn", f"arn:aws:iam::cloudfront:user/{args.name}")
        outputs.setdefault("cloudfrontAccessIdentityPath", f"origin-access-identity/cloudfront/{args.name}")
        outputs.setdefault("bucketRegionalDomainName", f"{args.name}.s3.us-east-1.amazonaws.com")
        return [f"{args.name}_id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        if args.token == "aws:ec2/getVpc:getVpc":
            return {
                "id": LOOKED_UP_VPC_ID,
                "arn": f"arn:aws:ec2:us-east-1:123456789012:vpc/{LOOKED_UP_VPC_ID}",
                "cidrBlock": "172.31.0.0/16",
            }
        return {}


pulumi.runtime.set_mocks(TopologyMocks(), project="aws-topologies", stack="test", preview=False)
pulumi.runtime.set_all_config(
    {
        "aws-topologies:web_ami_id": WEB_AMI_ID,
        "aws-topologies:bucket_policy": BUCKET_POLICY_SECRET,
    },
    ["aws-topologies:bucket_policy"],
)


def make_config(*resources: Dict[str, Any], **overrides: Any) -> Config:
    data = {
        "team": "platform",
        "service": "web",
        "environment": "dev",
        "region": "us-east-1",
        "aws_resources": list(resources),
    }
    data.update(overrides)
    return Config.from_dict(data)


@pytest.fixture()
def topology_dir() -> Path:
    return TOPOLOGY_DIR
