"""
devfiles_iac
------------

DevFiles 애플리케이션 스택을 EC2 한 대에 올리기 위한 AWS CDK 앱 + 배포 CLI 패키지.
VPC, EC2, S3, Secrets Manager 를 하나의 스택으로 선언하고,
최초 부팅 스크립트가 secret 을 읽어 .env 를 만든 뒤 docker compose 로 서비스를 띄운다.
"""

__all__ = [
    "config",
    "orchestrator",
    "stack",
]
