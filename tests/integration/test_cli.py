# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Integration tests for the command line interface against the in-memory runtime.
"""
import os

import pytest
from click.testing import CliRunner

from stackctl.CLI.main import cli
from stackctl.MODELS.service_definition import ServiceState
from stackctl.RUNTIME.memory_runtime import InMemoryRuntime

EXAMPLE = os.path.join(os.path.dirname(__file__), "..", "..", "stack.example.yaml")
SERVICES = ["postgres-db", "backend", "frontend", "nginx-proxy"]


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / ".env"
    path.write_text("POSTGRES_PASSWORD=secret\n")
    return str(path)


@pytest.fixture
def invoke(runtime, env_file):
    runner = CliRunner()

    def run(*args, input=None):
        return runner.invoke(
            cli,
            ['-f', EXAMPLE, '--env-file', env_file, *args],
            obj={'backend': runtime, 'sleep': lambda seconds: None},
            input=input,
        )
    return run


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('up', 'down', 'ps', 'route', 'render-proxy'):
        assert command in result.output


def test_up_builds_and_starts_everything(invoke, runtime):
    result = invoke('up')

    assert result.exit_code == 0, result.output
    assert runtime.images == {"notes-backend:latest", "notes-frontend:latest", "notes-nginx:latest"}
    assert all(runtime.state_of(name) == ServiceState.RUNNING for name in SERVICES)
    assert "Entrypoints:" in result.output
    assert "http://localhost:8080/api/" in result.output
    assert "http://localhost:8080/nginx-health" in result.output
    assert "http://localhost:3001" in result.output


def test_up_twice_changes_nothing(invoke, runtime):
    invoke('up', '--no-build')
    runtime.calls.clear()

    result = invoke('up', '--no-build')

    assert result.exit_code == 0
    assert runtime.mutating_calls() == []


def test_up_dry_run_is_pure(invoke, runtime):
    result = invoke('up', '--dry-run')

    assert result.exit_code == 0, result.output
    assert runtime.mutating_calls() == []
    assert "Would build" in result.output
    assert "planned" in result.output
    assert "Entrypoints:" not in result.output


def test_up_reports_blocked_services(invoke, runtime):
    runtime.fail("create", "backend")

    result = invoke('up', '--no-build')

    assert result.exit_code == 1
    assert "blocked: frontend, nginx-proxy" in result.output
    assert runtime.state_of("postgres-db") == ServiceState.RUNNING


def test_unreachable_runtime_is_fatal(invoke, runtime):
    runtime.available = False

    result = invoke('up')

    assert result.exit_code == 1
    assert "Error:" in result.output
    assert runtime.mutating_calls() == []


def test_missing_stack_file(runtime):
    result = CliRunner().invoke(cli, ['-f', 'missing.yaml', 'ps'], obj={'backend': runtime})
    assert result.exit_code == 1
    assert "Error: cannot read stack file missing.yaml" in result.output


def test_down_with_yes(invoke, runtime):
    invoke('up', '--no-build')

    result = invoke('down', '--yes')

    assert result.exit_code == 0, result.output
    assert "This will remove:" in result.output
    assert runtime.containers == {}
    assert runtime.networks == set()


def test_down_with_typed_phrase(invoke, runtime):
    invoke('up', '--no-build')

    result = invoke('down', input="destroy-app\n")

    assert result.exit_code == 0, result.output
    assert runtime.containers == {}


@pytest.mark.parametrize("answer", ["yes\n", None])
def test_down_cancelled(invoke, runtime, answer):
    invoke('up', '--no-build')
    runtime.calls.clear()

    result = invoke('down', input=answer)

    assert result.exit_code == 3
    assert "Destroy cancelled." in result.output
    assert runtime.mutating_calls() == []
    assert set(runtime.containers) == set(SERVICES)


def test_down_dry_run_never_prompts(invoke, runtime):
    invoke('up', '--no-build')
    runtime.calls.clear()

    result = invoke('down', '--dry-run')

    assert result.exit_code == 0
    assert "Type 'destroy-app'" not in result.output
    assert runtime.mutating_calls() == []


def test_ps(invoke, runtime):
    invoke('up', '--no-build')
    runtime.set_state("frontend", ServiceState.STOPPED)

    result = invoke('ps')

    assert result.exit_code == 0
    rows = [line.split() for line in result.output.splitlines()]
    lines = {row[0]: row[1] for row in rows if len(row) == 2 and row[0] in SERVICES}
    assert lines["frontend"] == "stopped"
    assert lines["backend"] == "running"


def test_route(invoke):
    result = invoke('route', '/api/notes?page=2')
    assert result.exit_code == 0
    assert "upstream: backend" in result.output
    assert "zone:     api" in result.output

    result = invoke('route', '/nginx-health')
    assert "static:   200" in result.output


def test_render_proxy(invoke, tmp_path):
    result = invoke('render-proxy')
    assert result.exit_code == 0
    assert "upstream backend {" in result.output

    out = tmp_path / "nginx.conf"
    result = invoke('render-proxy', '-o', str(out))
    assert result.exit_code == 0
    assert "limit_req zone=api burst=20 nodelay;" in out.read_text()
