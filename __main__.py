import pulumi
from awstopology import AWSResourceBuilder
from config import Config, load_config
from validation import ConfigValidationError, ensure_valid

DEFAULT_TOPOLOGY = "topologies/eks.yaml"


def load_topology() -> Config:
    """Load the topology file selected by the stack and run the static checks."""
    topology_path = pulumi.Config().get("topology") or DEFAULT_TOPOLOGY
    pulumi.log.info(f"Loading topology from '{topology_path}'")
    config = load_config(topology_path)
    try:
        return ensure_valid(config)
    except ConfigValidationError as e:
        for issue in e.issues:
            pulumi.log.error(f"Invalid topology: {issue}")
        raise


def main():
    config = load_topology()

    try:
        builder = AWSResourceBuilder(config)
    except Exception as e:
        pulumi.log.error(f"Failed to initialize AWSResourceBuilder: {e}")
        raise

    try:
        builder.build()
    except Exception as e:
        pulumi.log.error(f"Failed during resource build: {e}")
        raise

    # Export created resources and declared outputs
    for name, value in builder.exports().items():
        try:
            pulumi.export(name, value)
        except Exception as e:
            pulumi.log.warn(f"Failed to export '{name}': {e}")


if __name__ == "__main__":
    main()
