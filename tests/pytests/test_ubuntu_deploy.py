from datetime import date
from pathlib import Path

import pytest

from scripts.deploy import ubuntu_deploy
from scripts.deploy.deploy_models import DeployParams
from scripts.deploy.env_schema import DEPLOY_SCHEMA, VarsEnum
from scripts.deploy.git_helpers import SourceFetchError
from scripts.deploy.remote_host import CommandResult, RemoteCommandError
from scripts.deploy.ubuntu_deploy import DeploymentOrchestrator, list_transfer_items, log_file_path


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for spec in DEPLOY_SCHEMA:
        monkeypatch.delenv(spec.key.value, raising=False)


@pytest.fixture
def remote_calls(monkeypatch):
    """Replace ping, rsync and the HTTP check; record what they were asked to do."""
    calls: dict[str, list] = {"ping": [], "transfer": [], "http": []}

    def ping(host, **_):
        calls["ping"].append(host)
        return True

    def transfer(*, sources, host, remote_dir, key_path=None):
        calls["transfer"].append((list(sources), host, remote_dir))
        return []

    def http_check(url, **_):
        calls["http"].append(url)
        return True

    monkeypatch.setattr(ubuntu_deploy, "ping_host", ping)
    monkeypatch.setattr(ubuntu_deploy, "transfer_paths", transfer)
    monkeypatch.setattr(ubuntu_deploy, "check_http", http_check)
    return calls


def _repo(tmp_path: Path, *, dockerfile: bool = True) -> Path:
    repo = tmp_path / "app"
    repo.mkdir()
    (repo / ".git").mkdir()
    (repo / "app.py").write_text("print('hi')\n", encoding="utf-8")
    if dockerfile:
        (repo / "Dockerfile").write_text("FROM python:3.12-slim\n", encoding="utf-8")
    return repo


def _params(repo: Path, **overrides) -> DeployParams:
    values = dict(
        ssh_user="ubuntu",
        ssh_host="203.0.113.5",
        ssh_key=repo.parent / "id_rsa",
        repo_dir=repo,
        host_port=8080,
        container_port=3000,
    )
    values.update(overrides)
    return DeployParams(**values)


def test_log_file_path_is_dated():
    assert log_file_path(Path("/var/log"), date(2024, 3, 9)) == Path("/var/log/deploy_20240309.log")


def test_list_transfer_items_skips_git(tmp_path):
    repo = _repo(tmp_path)
    assert [p.name for p in list_transfer_items(repo, (".git",))] == ["Dockerfile", "app.py"]


def test_missing_descriptor_fails_before_any_remote_command(tmp_path, make_shell, remote_calls):
    shell = make_shell()

    code = DeploymentOrchestrator(_params(_repo(tmp_path, dockerfile=False)), shell=shell).run()

    assert code == 2
    assert shell.commands == []
    assert shell.connectivity_checks == 0
    assert remote_calls["ping"] == []


def test_unreachable_host_is_connectivity_failure(tmp_path, make_shell, remote_calls):
    shell = make_shell(connected=False)

    code = DeploymentOrchestrator(_params(_repo(tmp_path)), shell=shell).run()

    assert code == 3
    assert shell.commands == []
    assert remote_calls["transfer"] == []


def test_ping_failure_is_only_a_warning(tmp_path, make_shell, remote_calls, monkeypatch):
    monkeypatch.setattr(ubuntu_deploy, "ping_host", lambda host, **_: False)

    code = DeploymentOrchestrator(_params(_repo(tmp_path)), shell=make_shell()).run()

    assert code == 0


def test_successful_deploy_sequence(tmp_path, make_shell, remote_calls):
    repo = _repo(tmp_path)
    shell = make_shell(
        {
            "test -f /home/ubuntu/app/Dockerfile": 0,
            "test -L /etc/nginx/sites-enabled/default": 0,
            "test -": 1,
        }
    )

    code = DeploymentOrchestrator(_params(repo), shell=shell).run()

    assert code == 0
    assert shell.commands[0] == "mkdir -p /home/ubuntu/app"
    [(sources, host, remote_dir)] = remote_calls["transfer"]
    assert [p.name for p in sources] == ["Dockerfile", "app.py"]
    assert host == "ubuntu@203.0.113.5"
    assert remote_dir == "/home/ubuntu/app"

    build = shell.commands.index("cd /home/ubuntu/app && docker build -f Dockerfile -t deployed-app .")
    run = shell.commands.index("docker run -d --name deployed-app -p 8080:3000 deployed-app")
    write = shell.commands.index("tee /etc/nginx/sites-available/deployed_app >/dev/null")
    assert build < run < write
    assert "rm -f /etc/nginx/sites-enabled/default" in shell.commands
    assert shell.commands[-1] == "systemctl reload nginx"
    assert "proxy_pass http://127.0.0.1:8080;" in shell.inputs[write]
    assert remote_calls["http"] == ["http://203.0.113.5/"]


def test_skip_verify_skips_http_check(tmp_path, make_shell, remote_calls):
    code = DeploymentOrchestrator(_params(_repo(tmp_path), verify=False), shell=make_shell()).run()

    assert code == 0
    assert remote_calls["http"] == []


def test_build_failure_exit_code(tmp_path, make_shell, remote_calls):
    shell = make_shell({"docker build": 1})

    code = DeploymentOrchestrator(_params(_repo(tmp_path)), shell=shell).run()

    assert code == 4
    assert not any(c.startswith("docker run") for c in shell.commands)
    assert not any("nginx" in c and c.startswith("tee") for c in shell.commands)
    assert remote_calls["http"] == []


def test_proxy_validation_failure_exit_code(tmp_path, make_shell, remote_calls):
    shell = make_shell({"nginx -t": 1})

    code = DeploymentOrchestrator(_params(_repo(tmp_path)), shell=shell).run()

    assert code == 5
    assert "systemctl reload nginx" not in shell.commands
    validate = shell.commands.index("nginx -t")
    assert "rm -f /etc/nginx/sites-enabled/deployed_app" in shell.commands[validate:]


def test_control_channel_lost_mid_run(tmp_path, make_shell, remote_calls):
    shell = make_shell({"mkdir -p": RemoteCommandError("Connection reset")})

    code = DeploymentOrchestrator(_params(_repo(tmp_path)), shell=shell).run()

    assert code == 3


def test_cleanup_removes_everything(tmp_path, make_shell, remote_calls):
    shell = make_shell(
        {
            "docker ps": CommandResult(0, stdout="web\trunning\n"),
            "docker images": CommandResult(0, stdout="abc123\tweb-img\n"),
        }
    )

    code = DeploymentOrchestrator(_params(tmp_path), shell=shell).run_cleanup()

    assert code == 0
    for expected in (
        "docker stop web",
        "docker rm -f web",
        "docker rmi -f abc123",
        "rm -f /etc/nginx/sites-enabled/deployed_app",
        "rm -f /etc/nginx/sites-available/deployed_app",
        "systemctl reload nginx",
    ):
        assert expected in shell.commands


def test_cleanup_on_unreachable_host_fails(tmp_path, make_shell, remote_calls):
    shell = make_shell(connected=False)

    assert DeploymentOrchestrator(_params(tmp_path), shell=shell).run_cleanup() == 3
    assert shell.commands == []


def _key(tmp_path: Path) -> Path:
    key = tmp_path / "id_rsa"
    key.write_text("KEY", encoding="utf-8")
    return key


def test_main_cleanup_prompts_only_for_connection(tmp_path, monkeypatch):
    captured = {}

    def fake_cleanup(self):
        captured["params"] = self.params
        return 0

    monkeypatch.setattr(DeploymentOrchestrator, "run_cleanup", fake_cleanup)
    answers = iter(["ubuntu", "203.0.113.5", str(_key(tmp_path))])

    code = ubuntu_deploy.main(
        ["--cleanup", "--log-dir", str(tmp_path), "--config-dir", str(tmp_path)],
        prompt_fn=lambda _: next(answers),
        secret_prompt_fn=lambda _: pytest.fail("cleanup must not ask for the token"),
    )

    assert code == 0
    assert captured["params"].ssh_target == "ubuntu@203.0.113.5"
    assert captured["params"].proxy_site == "deployed_app"
    assert log_file_path(tmp_path).exists()


def test_main_invalid_input_is_local_failure(tmp_path, capsys):
    code = ubuntu_deploy.main(
        ["--log-dir", str(tmp_path), "--config-dir", str(tmp_path)],
        prompt_fn=lambda _: "",
        secret_prompt_fn=lambda _: "",
    )

    assert code == 2
    assert "Missing mandatory key(s)" in capsys.readouterr().err
    assert "validation failed" in log_file_path(tmp_path).read_text(encoding="utf-8")


def _deploy_argv(tmp_path: Path) -> list[str]:
    return [
        "--git-url", "https://github.com/acme/app.git",
        "--ssh-user", "ubuntu",
        "--host", "203.0.113.5",
        "--ssh-key", str(_key(tmp_path)),
        "--app-port", "3000",
        "--log-dir", str(tmp_path),
        "--config-dir", str(tmp_path),
        "--workdir", str(tmp_path),
    ]


def test_main_source_fetch_failure(tmp_path, monkeypatch):
    def failing_fetch(**_):
        raise SourceFetchError("git failed (128): repository not found")

    monkeypatch.setattr(ubuntu_deploy, "fetch_source", failing_fetch)

    code = ubuntu_deploy.main(_deploy_argv(tmp_path), prompt_fn=lambda _: "", secret_prompt_fn=lambda _: "ghp_x")

    assert code == 2


def test_main_deploy_wires_params(tmp_path, monkeypatch):
    repo = _repo(tmp_path)
    captured = {}

    def fake_fetch(*, git_url, token, branch, workdir):
        captured["fetch"] = (git_url, token, branch, workdir)
        return repo

    def fake_run(self):
        captured["params"] = self.params
        return 0

    monkeypatch.setattr(ubuntu_deploy, "fetch_source", fake_fetch)
    monkeypatch.setattr(DeploymentOrchestrator, "run", fake_run)

    code = ubuntu_deploy.main(
        [*_deploy_argv(tmp_path), "--host-port", "8080"],
        prompt_fn=lambda _: "",
        secret_prompt_fn=lambda _: "ghp_x",
    )

    assert code == 0
    assert captured["fetch"] == ("https://github.com/acme/app.git", "ghp_x", "main", tmp_path.resolve())
    params = captured["params"]
    assert params.repo_dir == repo
    assert (params.host_port, params.container_port) == (8080, 3000)
    assert "ghp_x" not in log_file_path(tmp_path).read_text(encoding="utf-8")


def test_undecodable_compose_file_is_local_failure(tmp_path, make_shell, remote_calls):
    repo = _repo(tmp_path, dockerfile=False)
    (repo / "docker-compose.yml").write_bytes(b"# built by \xff\xfe\nservices:\n  web:\n    build: .\n")
    shell = make_shell()

    code = DeploymentOrchestrator(_params(repo), shell=shell).run()

    assert code == 2
    assert shell.commands == []


def test_main_rejects_non_ascii_port(tmp_path, capsys):
    argv = [arg if arg != "3000" else "²" for arg in _deploy_argv(tmp_path)]

    code = ubuntu_deploy.main(argv, prompt_fn=lambda _: "", secret_prompt_fn=lambda _: "ghp_x")

    assert code == 2
    assert VarsEnum.DEPLOY_APP_PORT.value in capsys.readouterr().err


def test_main_rejects_server_name_with_nginx_syntax(tmp_path, capsys):
    argv = [*_deploy_argv(tmp_path), "--server-name", "example.com; return 301"]

    code = ubuntu_deploy.main(argv, prompt_fn=lambda _: "", secret_prompt_fn=lambda _: "ghp_x")

    assert code == 2
    assert VarsEnum.DEPLOY_SERVER_NAME.value in capsys.readouterr().err
