"""
Command line client for a running vSphere instance plugin.

    vsphere-instance info
    vsphere-instance provision --tag infrakit.group=workers properties.json
    vsphere-instance describe --tag infrakit.group=workers
    vsphere-instance destroy vm-4242
"""

import argparse
import json
import os
import sys
from typing import Dict, List, Optional

from vsphere_instance.client import InstanceClient
from vsphere_instance.config import settings
from vsphere_instance.errors import ConfigurationError, PluginError


def parse_tags(values: Optional[List[str]]) -> Dict[str, str]:
    """Turn repeated key=value options into a tag map."""
    tags = {}
    for value in values or []:
        key, sep, tag = value.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Invalid tag '{value}', expected key=value")
        tags[key] = tag
    return tags


def read_properties(source: str) -> str:
    """Read a properties document from a file, or stdin for '-'."""
    if source == "-":
        return sys.stdin.read()
    with open(source, "r", encoding="utf-8") as f:
        return f.read()


def build_parser() -> argparse.ArgumentParser:
    default_url = os.getenv("VSPHERE_PLUGIN_URL", f"http://{settings.api_host}:{settings.api_port}")

    parser = argparse.ArgumentParser(prog="vsphere-instance", description="vSphere instance plugin client")
    parser.add_argument("--url", default=default_url, help="Plugin base URL")
    parser.add_argument("--timeout", type=float, default=900, help="Request timeout in seconds")
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("info", help="Show vendor info and example properties")

    validate = commands.add_parser("validate", help="Validate a properties document")
    validate.add_argument("properties", help="JSON file, or - for stdin")

    provision = commands.add_parser("provision", help="Provision an instance")
    provision.add_argument("properties", help="JSON file, or - for stdin")
    provision.add_argument("--tag", action="append", help="Tag as key=value, repeatable")
    provision.add_argument("--logical-id", help="Logical ID of the instance")

    destroy = commands.add_parser("destroy", help="Destroy an instance")
    destroy.add_argument("instance", help="Instance ID")

    describe = commands.add_parser("describe", help="Describe instances")
    describe.add_argument("--tag", action="append", help="Tag as key=value, repeatable")
    describe.add_argument("--properties", action="store_true", help="Include VM properties")
    return parser


def run_command(args: argparse.Namespace, client: InstanceClient) -> int:
    if args.command == "info":
        print(json.dumps(client.info(), indent=2))
    elif args.command == "validate":
        client.validate(read_properties(args.properties))
        print("✓ Properties are valid")
    elif args.command == "provision":
        instance_id = client.provision(
            read_properties(args.properties), tags=parse_tags(args.tag), logical_id=args.logical_id
        )
        print(instance_id)
    elif args.command == "destroy":
        client.destroy(args.instance)
        print(f"✓ Destroyed {args.instance}")
    elif args.command == "describe":
        descriptions = client.describe_instances(parse_tags(args.tag), args.properties)
        print(json.dumps([d.model_dump(by_alias=True, exclude_none=True) for d in descriptions], indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    client = InstanceClient(args.url, timeout=args.timeout)
    try:
        return run_command(args, client)
    except ConfigurationError as e:
        print(f"✗ {e}", file=sys.stderr)
        for violation in e.violations:
            print(f"    - {violation}", file=sys.stderr)
        return 2
    except PluginError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 1
    finally:
        client.close()


if __name__ == "__main__":
    sys.exit(main())
