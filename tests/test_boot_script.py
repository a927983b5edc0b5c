import json
import os
import shutil
import subprocess
from dataclasses import replace

import pytest

from devfiles_iac import boot_script as bs
from devfiles_iac.aws_secrets import secret_catalog
from devfiles_iac.config import StackConfig


# .env 에 반드시 있어야 하는 키
EXPECTED_ENV_KEYS = {
    "SPRING_PROFILES_ACTIVE",
    "POSTGRES_DB",
    "POSTGRES_USER",
    "POSTGRES_PASSWORD",
    "POSTGRES_URL",
    "RABBITMQ_ERLANG_COOKIE",
    "RABBITMQ_DEFAULT_USER",
    "RABBITMQ_DEFAULT_PASS",
    "JWT_SECRET_KEY",
    "REDIS_PASSWORD",
    "AWS_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY",
    "AWS_BUCKET_NAME",
    "AI_SERVICE_URL",
    "AI_SERVICE_KEY",
    "AI_SERVICE_PORT",
    "OLLAMA_LLM_BASE_URL",
    "OLLAMA_EMBEDDING_BASE_URL",
    "CHROMA_DB_HOST",
    "CHROMA_DB_PORT",
    "NOTIFICATION_SERVICE_USER",
    "NOTIFICATION_SERVICE_PASS",
    "MAIL_SENDER_EMAIL",
    "MAIL_HOST",
    "MAIL_PORT",
    "MAIL_USERNAME",
    "MAIL_PASSWORD",
    "DEV_FILES_SERVICE_PORT",
}


def _ids(cfg: StackConfig) -> dict[str, str]:
    return {name: f"id-{name}" for name in secret_catalog(cfg)}


def _script(cfg: StackConfig) -> bs.BootScript:
    return bs.build_boot_script(cfg, _ids(cfg), region="eu-west-1")


def _index(commands: list[str], predicate) -> int:  # noqa: ANN001
    for i, c in enumerate(commands):
        if predicate(c):
            return i
    raise AssertionError("command not found")


def test_script_starts_fail_fast(cfg: StackConfig) -> None:
    commands = _script(cfg).commands()

    first = next(c for c in commands if not c.startswith("#"))
    assert first == "set -euo pipefail"


def test_stages_in_boot_order(cfg: StackConfig) -> None:
    names = [s.name for s in _script(cfg).stages]

    assert names == [
        "shell",
        "packages",
        "docker",
        "log-agent",
        "clone",
        "secrets",
        "env-file",
        "compose",
    ]


def test_clone_command_uses_repo_url_with_submodules(cfg: StackConfig) -> None:
    clone = [c for c in _script(cfg).stage("clone").commands if c.startswith("git clone")]

    assert len(clone) == 1
    assert "--recurse-submodules" in clone[0].split()
    assert "git@github.com:org/repo.git" in clone[0].split()


def test_known_hosts_seeded_for_repo_host(cfg: StackConfig) -> None:
    cmds = _script(cfg).stage("clone").commands

    assert "ssh-keyscan -H github.com >> /root/.ssh/known_hosts" in cmds
    # deploy key 미설정 시 secret 조회 없음
    assert not any("get-secret-value" in c for c in cmds)


def test_deploy_key_fetched_before_clone_when_configured(cfg: StackConfig) -> None:
    cfg = replace(cfg, github_deploy_key_secret_name="devfiles/deploy-key")
    cmds = list(_script(cfg).stage("clone").commands)

    fetch = _index(cmds, lambda c: "get-secret-value" in c and "id-github_deploy_key" in c)
    clone = _index(cmds, lambda c: c.startswith("git clone"))
    assert fetch < clone
    assert any(c.startswith("export GIT_SSH_COMMAND=") for c in cmds)
    assert "github_deploy_key" in bs.referenced_secrets(cfg)


def test_every_secret_fetched_once_before_env_file(cfg: StackConfig) -> None:
    script = _script(cfg)
    commands = script.commands()

    heredoc = _index(commands, lambda c: c.startswith("cat <<EOF_ENV"))
    fetches = [i for i, c in enumerate(commands) if "get-secret-value" in c]

    assert len(fetches) == len(bs.referenced_secrets(cfg))
    assert all(i < heredoc for i in fetches)
    for name in bs.referenced_secrets(cfg):
        assert sum(f"--secret-id id-{name} " in commands[i] for i in fetches) == 1


def test_field_extraction_fails_on_missing_field(cfg: StackConfig) -> None:
    cmds = _script(cfg).stage("secrets").commands
    extractions = [c for c in cmds if "jq" in c]

    assert extractions
    assert all("jq -er" in c for c in extractions)
    assert "POSTGRES_PASSWORD_VAL=$(printf '%s' \"${POSTGRES_SECRET}\" | jq -er .password)" in cmds


def test_secret_fetch_passes_region(cfg: StackConfig) -> None:
    cmds = [c for c in _script(cfg).stage("secrets").commands if "get-secret-value" in c]

    assert all("--region eu-west-1" in c for c in cmds)


def test_env_file_uses_unquoted_heredoc(cfg: StackConfig) -> None:
    cmds = _script(cfg).stage("env-file").commands

    assert f"cat <<EOF_ENV > {cfg.app_dir}/.env" in cmds
    assert cmds[-1] == "EOF_ENV"
    assert "POSTGRES_PASSWORD=${POSTGRES_PASSWORD_VAL}" in cmds


def test_env_file_contains_all_keys(cfg: StackConfig) -> None:
    cmds = _script(cfg).stage("env-file").commands
    body = cmds[cmds.index(f"cat <<EOF_ENV > {cfg.app_dir}/.env") + 1:-1]
    keys = {line.split("=", 1)[0] for line in body if not line.startswith("#")}

    assert keys == EXPECTED_ENV_KEYS
    assert set(bs.env_file_keys(cfg)) == EXPECTED_ENV_KEYS


def test_env_file_values_non_empty(cfg: StackConfig) -> None:
    for _, entries in bs.env_file_sections(cfg):
        for key, value in entries:
            assert value, key


def test_every_secret_variable_is_defined_before_use(cfg: StackConfig) -> None:
    defined = {c.split("=", 1)[0] for c in _script(cfg).stage("secrets").commands}

    for b in bs.ENV_SECRET_BINDINGS:
        assert b.shell_var in defined


def test_compose_copies_env_and_starts_detached(cfg: StackConfig) -> None:
    cmds = _script(cfg).stage("compose").commands

    for folder in cfg.service_dirs:
        assert f"cp {cfg.app_dir}/.env {cfg.app_dir}/{folder}/.env" in cmds
    assert cmds[-1] == "docker compose up -d"


def test_log_agent_config_lists_fixed_paths(cfg: StackConfig) -> None:
    config = bs.cwagent_config(cfg)
    entries = config["logs"]["logs_collected"]["files"]["collect_list"]

    assert [e["file_path"] for e in entries] == list(bs.LOG_PATHS)
    assert {e["log_group_name"] for e in entries} == {cfg.log_group_name}


def test_missing_secret_identifier_rejected(cfg: StackConfig) -> None:
    ids = _ids(cfg)
    del ids["redis"]

    with pytest.raises(ValueError) as excinfo:
        bs.build_boot_script(cfg, ids, region="eu-west-1")

    assert "redis" in str(excinfo.value)


def test_render_has_shebang(cfg: StackConfig) -> None:
    text = _script(cfg).render()

    assert text.startswith("#!/bin/bash\n# --- shell\nset -euo pipefail\n")
    assert text.endswith("\n")


def _run_secret_stages(cfg: StackConfig, tmp_path, aws_body: str) -> subprocess.CompletedProcess:  # noqa: ANN001
    """shell/secrets/env-file 단계만 실제 bash 로 실행한다. aws CLI 는 가짜 스크립트로 대체."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake_aws = bin_dir / "aws"
    fake_aws.write_text("#!/bin/sh\n" + aws_body + "\n", encoding="utf-8")
    fake_aws.chmod(0o755)

    script = _script(cfg)
    partial = bs.BootScript(
        stages=tuple(script.stage(name) for name in ("shell", "secrets", "env-file")),
        secrets=script.secrets,
    )
    path = tmp_path / "boot.sh"
    path.write_text(partial.render(), encoding="utf-8")

    env = dict(os.environ)
    env["PATH"] = f"{bin_dir}{os.pathsep}{env.get('PATH', '')}"
    return subprocess.run(
        [shutil.which("bash"), str(path)],
        env=env,
        capture_output=True,
        text=True,
        timeout=30,
    )


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash 필요")
def test_failed_secret_fetch_aborts_before_env_file(cfg: StackConfig, tmp_path) -> None:  # noqa: ANN001
    cfg = replace(cfg, app_dir=str(tmp_path / "app"))
    (tmp_path / "app").mkdir()

    result = _run_secret_stages(cfg, tmp_path, "echo 'AccessDeniedException' >&2\nexit 255")

    assert result.returncode != 0
    assert "AccessDeniedException" in result.stderr
    assert not (tmp_path / "app" / ".env").exists()


@pytest.mark.skipif(
    shutil.which("bash") is None or shutil.which("jq") is None, reason="bash, jq 필요"
)
def test_env_file_written_from_fetched_secrets(cfg: StackConfig, tmp_path) -> None:  # noqa: ANN001
    cfg = replace(cfg, app_dir=str(tmp_path / "app"))
    (tmp_path / "app").mkdir()
    payload = json.dumps({
        "username": "devfiles",
        "password": "pw123",
        "key": "ai-key",
        "AccessKeyId": "AKIAEXAMPLE",
        "SecretAccessKey": "sak",
        "email": "noreply@example.com",
    })

    result = _run_secret_stages(cfg, tmp_path, f"echo '{payload}'")

    assert result.returncode == 0, result.stderr
    lines = (tmp_path / "app" / ".env").read_text(encoding="utf-8").splitlines()
    assert "POSTGRES_PASSWORD=pw123" in lines
    assert "RABBITMQ_ERLANG_COOKIE=pw123" in lines
    assert "AWS_ACCESS_KEY_ID=AKIAEXAMPLE" in lines
    assert "MAIL_SENDER_EMAIL=noreply@example.com" in lines


@pytest.mark.skipif(
    shutil.which("bash") is None or shutil.which("jq") is None, reason="bash, jq 필요"
)
def test_missing_json_field_aborts_before_env_file(cfg: StackConfig, tmp_path) -> None:  # noqa: ANN001
    cfg = replace(cfg, app_dir=str(tmp_path / "app"))
    (tmp_path / "app").mkdir()

    result = _run_secret_stages(cfg, tmp_path, "echo '{\"username\":\"devfiles\"}'")

    assert result.returncode != 0
    assert not (tmp_path / "app" / ".env").exists()


def test_erlang_cookie_read_from_password_field(cfg: StackConfig) -> None:
    cmds = _script(cfg).stage("secrets").commands

    assert (
        "RABBITMQ_ERLANG_COOKIE_VAL=$(printf '%s' \"${RABBITMQ_ERLANG_COOKIE_SECRET}\" | jq -er .password)"
        in cmds
    )
