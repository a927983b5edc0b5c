from __future__ import annotations

import json
from dataclasses import replace

import aws_cdk as cdk
import pytest
from aws_cdk import aws_secretsmanager as secretsmanager
from aws_cdk.assertions import Match, Template

from devfiles_iac.aws_network import FIREWALL_RULES
from devfiles_iac.aws_secrets import secret_catalog
from devfiles_iac.boot_script import referenced_secrets
from devfiles_iac.config import StackConfig
from devfiles_iac.stack import DevFilesStack


def _synth(cfg: StackConfig) -> tuple[DevFilesStack, Template]:
    app = cdk.App()
    stack = DevFilesStack(app, "TestStack", config=cfg)
    return stack, Template.from_stack(stack)


@pytest.fixture
def synthesized(cfg: StackConfig) -> tuple[DevFilesStack, Template]:
    return _synth(cfg)


def _get_secret_value_resources(template: Template) -> list:
    resources = []
    for policy in template.find_resources("AWS::IAM::Policy").values():
        for statement in policy["Properties"]["PolicyDocument"]["Statement"]:
            if statement["Action"] == "secretsmanager:GetSecretValue":
                res = statement["Resource"]
                resources.extend(res if isinstance(res, list) else [res])
    return resources


def _flatten(value) -> str:  # noqa: ANN001
    """Fn::Join 의 문자열 조각만 이어 붙인다. (Ref 등 토큰은 빈 문자열)"""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and "Fn::Join" in value:
        sep, parts = value["Fn::Join"]
        return sep.join(_flatten(p) for p in parts)
    return ""


def _assert_external_secrets_granted(template: Template, cfg: StackConfig) -> None:
    catalog = secret_catalog(cfg)
    flattened = [_flatten(r) for r in _get_secret_value_resources(template)]

    for name in referenced_secrets(cfg):
        spec = catalog[name]
        if not spec.is_external:
            continue
        # 실제 ARN 은 이름 뒤에 랜덤 6자리 접미사가 붙는다
        assert any(r.endswith(f":secret:{spec.external_name}-??????") for r in flattened), name
        assert not any(r.endswith(f":secret:{spec.external_name}") for r in flattened), name


def test_network_single_public_subnet_without_nat(synthesized) -> None:
    _, template = synthesized

    template.has_resource_properties("AWS::EC2::VPC", {"CidrBlock": "10.0.0.0/16"})
    template.resource_count_is("AWS::EC2::Subnet", 1)
    template.resource_count_is("AWS::EC2::NatGateway", 0)
    template.has_resource_properties("AWS::EC2::Subnet", {"MapPublicIpOnLaunch": True})


def test_firewall_allows_exactly_six_ports(synthesized) -> None:
    _, template = synthesized

    groups = template.find_resources(
        "AWS::EC2::SecurityGroup",
        {"Properties": {"GroupDescription": "Access to DevFiles EC2 instance"}},
    )
    assert len(groups) == 1
    ingress = next(iter(groups.values()))["Properties"]["SecurityGroupIngress"]

    assert sorted(r["FromPort"] for r in ingress) == [22, 80, 5432, 6379, 8000, 15673]
    assert all(r["FromPort"] == r["ToPort"] for r in ingress)
    assert {r["CidrIp"] for r in ingress} == {"0.0.0.0/0"}
    assert {r["IpProtocol"] for r in ingress} == {"tcp"}
    assert len(ingress) == len(FIREWALL_RULES)


def test_generated_secret_keeps_template_fields(synthesized) -> None:
    _, template = synthesized

    template.has_resource_properties(
        "AWS::SecretsManager::Secret",
        {
            "GenerateSecretString": {
                "PasswordLength": 16,
                "ExcludeCharacters": "@/\"' \\",
                "SecretStringTemplate": '{"username":"devfiles","password":""}',
                "GenerateStringKey": "password",
            },
        },
    )


def test_generated_secrets_destroyed_with_stack(synthesized) -> None:
    _, template = synthesized

    # 외부 secret 3개는 리소스로 생성되지 않는다
    template.resource_count_is("AWS::SecretsManager::Secret", 8)
    secrets = template.find_resources("AWS::SecretsManager::Secret")
    assert {s["DeletionPolicy"] for s in secrets.values()} == {"Delete"}


def test_role_reads_exactly_the_referenced_secrets(synthesized, cfg: StackConfig) -> None:
    stack, template = synthesized
    resources = _get_secret_value_resources(template)

    assert len(resources) == len(referenced_secrets(cfg))
    assert "*" not in resources

    for name in referenced_secrets(cfg):
        secret = stack.secrets[name]
        if isinstance(secret, secretsmanager.Secret):
            logical_id = stack.get_logical_id(secret.node.default_child)
            assert {"Ref": logical_id} in resources
    _assert_external_secrets_granted(template, cfg)


def test_role_trusts_ec2_with_ssm_and_log_agent(synthesized) -> None:
    _, template = synthesized

    template.has_resource_properties(
        "AWS::IAM::Role",
        {
            "AssumeRolePolicyDocument": Match.object_like({
                "Statement": Match.array_with([
                    Match.object_like({"Principal": {"Service": "ec2.amazonaws.com"}}),
                ]),
            }),
        },
    )
    roles = json.dumps(template.find_resources("AWS::IAM::Role"))
    assert "AmazonSSMManagedInstanceCore" in roles
    assert "CloudWatchAgentServerPolicy" in roles


def test_bucket_deleted_with_stack(synthesized) -> None:
    _, template = synthesized

    template.has_resource(
        "AWS::S3::Bucket",
        {
            "Properties": Match.object_like({"BucketName": "dev-files-bucket"}),
            "DeletionPolicy": "Delete",
        },
    )
    # auto_delete_objects 용 커스텀 리소스
    template.resource_count_is("Custom::S3AutoDeleteObjects", 1)


def test_instance_uses_role_and_security_group(synthesized) -> None:
    _, template = synthesized

    template.resource_count_is("AWS::EC2::Instance", 1)
    template.has_resource_properties(
        "AWS::EC2::Instance",
        {
            "InstanceType": "t3.2xlarge",
            "UserData": Match.any_value(),
            "IamInstanceProfile": Match.any_value(),
            "SecurityGroupIds": Match.any_value(),
        },
    )


def test_outputs_expose_public_ip_and_dns(synthesized) -> None:
    _, template = synthesized

    template.has_output("InstancePublicIp", {
        "Value": {"Fn::GetAtt": [Match.any_value(), "PublicIp"]},
    })
    template.has_output("InstancePublicDns", {
        "Value": {"Fn::GetAtt": [Match.any_value(), "PublicDnsName"]},
    })


def test_boot_script_attached_to_stack(synthesized, cfg: StackConfig) -> None:
    stack, _ = synthesized

    assert stack.boot_script.secrets == tuple(referenced_secrets(cfg))
    clone = [c for c in stack.boot_script.commands() if c.startswith("git clone")]
    assert clone == [f"git clone --recurse-submodules {cfg.github_repo_url} {cfg.app_dir}"]


def test_deploy_key_secret_also_granted(cfg: StackConfig) -> None:
    cfg = replace(cfg, github_deploy_key_secret_name="devfiles/deploy-key")
    _, template = _synth(cfg)

    assert len(_get_secret_value_resources(template)) == len(referenced_secrets(cfg))
    template.resource_count_is("AWS::SecretsManager::Secret", 8)
    _assert_external_secrets_granted(template, cfg)
    flattened = [_flatten(r) for r in _get_secret_value_resources(template)]
    assert any(r.endswith(":secret:devfiles/deploy-key-??????") for r in flattened)


def test_external_secret_grant_with_concrete_environment(cfg: StackConfig) -> None:
    app = cdk.App()
    stack = DevFilesStack(
        app,
        "EnvStack",
        config=cfg,
        env=cdk.Environment(account="111111111111", region="eu-west-1"),
    )
    template = Template.from_stack(stack)
    policies = json.dumps(template.find_resources("AWS::IAM::Policy"))

    assert ":secret:DevFilesMailSenderSecretName-??????" in policies
    assert ":secret:DevFilesAWSAccessKeyIdSecretName-??????" in policies
    assert ":secret:DevFilesAWSSecretAccessKeySecretName-??????" in policies
    _assert_external_secrets_granted(template, cfg)


def test_redeclaring_with_same_input_is_stable(cfg: StackConfig) -> None:
    _, first = _synth(cfg)
    _, second = _synth(cfg)

    assert first.to_json() == second.to_json()
