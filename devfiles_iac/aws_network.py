"""
aws_network
-----------

VPC(퍼블릭 서브넷 1개, NAT 없음)와 인스턴스용 Security Group 을 구성하는 모듈.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Tuple

from aws_cdk import aws_ec2 as ec2

from .config import StackConfig
from .logging_utils import get_logger


logger = get_logger(__name__)

VPC_CIDR = "10.0.0.0/16"
PUBLIC_SUBNET_CIDR_MASK = 24


@dataclass(frozen=True)
class FirewallRule:
    port: int
    description: str


FIREWALL_RULES: Tuple[FirewallRule, ...] = (
    FirewallRule(22, "SSH"),
    FirewallRule(80, "DevFiles Service"),
    FirewallRule(5432, "PostgreSQL"),
    FirewallRule(6379, "Redis"),
    FirewallRule(15673, "RabbitMQ UI"),
    FirewallRule(8000, "ChromaDB"),
)

# 외부에 열려 있으면 안 되는 내부 서비스 포트
_INTERNAL_SERVICE_PORTS = {5432, 6379, 15673, 8000}


def build_vpc(scope) -> ec2.Vpc:  # noqa: ANN001
    logger.debug("VPC 선언: cidr=%s", VPC_CIDR)
    return ec2.Vpc(
        scope,
        "DevFilesVPC",
        max_azs=1,
        ip_addresses=ec2.IpAddresses.cidr(VPC_CIDR),
        subnet_configuration=[
            ec2.SubnetConfiguration(
                name="Public",
                subnet_type=ec2.SubnetType.PUBLIC,
                cidr_mask=PUBLIC_SUBNET_CIDR_MASK,
            ),
        ],
        nat_gateways=0,
    )


def build_security_group(scope, vpc: ec2.IVpc, cfg: StackConfig,  # noqa: ANN001
                         rules: Iterable[FirewallRule] = FIREWALL_RULES) -> ec2.SecurityGroup:
    sg = ec2.SecurityGroup(
        scope,
        "DevFilesEc2SecurityGroup",
        vpc=vpc,
        description="Access to DevFiles EC2 instance",
        allow_all_outbound=True,
    )
    peer = ec2.Peer.ipv4(cfg.ingress_cidr)
    for rule in rules:
        sg.add_ingress_rule(peer, ec2.Port.tcp(rule.port), rule.description)
    return sg


def exposure_notes(cfg: StackConfig, rules: Iterable[FirewallRule] = FIREWALL_RULES) -> List[str]:
    """전체 인터넷에 열린 내부 서비스 포트에 대한 안내 문구."""
    if cfg.ingress_cidr not in {"0.0.0.0/0"}:
        return []
    return [
        f"Firewall: {r.port} ({r.description}) 포트가 모든 IPv4 에 열려 있습니다"
        for r in rules
        if r.port in _INTERNAL_SERVICE_PORTS
    ]
