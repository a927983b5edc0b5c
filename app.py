#!/usr/bin/env python3
"""CDK app entry point for the DevFiles EC2 stack."""

import os

import aws_cdk as cdk

from devfiles_iac.config import StackConfig, load_env_files
from devfiles_iac.logging_utils import setup_logging
from devfiles_iac.stack import DevFilesStack


def main() -> None:
    setup_logging()

    base_dir = os.path.dirname(os.path.abspath(__file__))
    load_env_files(base_dir)
    config = StackConfig.from_env()

    app = cdk.App()
    DevFilesStack(
        app,
        config.stack_name,
        config=config,
        env=cdk.Environment(
            account=config.aws_account_id,
            region=config.aws_region,
        ),
        description="DevFiles EC2 instance with VPC, S3 bucket and Secrets Manager secrets",
    )
    app.synth()


if __name__ == "__main__":
    main()
