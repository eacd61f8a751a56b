import json

from click.testing import CliRunner

from cli import cli

BATCH = """
batch:
  github_username: octo
  package_prefix: com.acme
  author_name: Ada Lovelace
  author_email: ada@example.com
  create_repositories: {create}
"""


def env_for(tmp_path):
    return {
        "APPFORGE_DATA_DIR": str(tmp_path / "data"),
        "APPFORGE_GITHUB_TOKEN": "",
        "APPFORGE_CODEMAGIC_TOKEN": "",
    }


def test_list_templates():
    result = CliRunner().invoke(cli, ["list-templates", "--category", "finance"])
    assert result.exit_code == 0
    assert "expense-tracker" in result.output
    assert "climate-monitor" not in result.output


def test_run_batch_offline_writes_report(tmp_path):
    config_file = tmp_path / "batch.yaml"
    config_file.write_text(BATCH.format(create="false"), encoding="utf-8")
    report_file = tmp_path / "out" / "report.json"

    result = CliRunner().invoke(cli, ["run-batch", str(config_file), "study-timer", "recipe-vault",
                                      "--report", str(report_file)], env=env_for(tmp_path))

    assert result.exit_code == 0, result.output
    assert "2 succeeded" in result.output
    report = json.loads(report_file.read_text(encoding="utf-8"))
    assert report["total"] == 2
    assert [r["package_identifier"] for r in report["results"]] == ["com.acme.studytimer", "com.acme.recipevault"]


def test_run_batch_requires_credentials_for_remote_stages(tmp_path):
    config_file = tmp_path / "batch.yaml"
    config_file.write_text(BATCH.format(create="true"), encoding="utf-8")

    result = CliRunner().invoke(cli, ["run-batch", str(config_file), "study-timer"], env=env_for(tmp_path))

    assert result.exit_code == 1
    assert "APPFORGE_GITHUB_TOKEN" in result.output


def test_run_batch_rejects_unknown_template(tmp_path):
    config_file = tmp_path / "batch.yaml"
    config_file.write_text(BATCH.format(create="false"), encoding="utf-8")

    result = CliRunner().invoke(cli, ["run-batch", str(config_file), "no-such-app"], env=env_for(tmp_path))

    assert result.exit_code == 1
    assert "Unknown template id(s): no-such-app" in result.output


def test_build_stats_with_empty_history(tmp_path):
    result = CliRunner().invoke(cli, ["build-stats"], env=env_for(tmp_path))
    assert result.exit_code == 0
    assert json.loads(result.stdout)["total"] == 0

    result = CliRunner().invoke(cli, ["build-history"], env=env_for(tmp_path))
    assert "No builds recorded." in result.output


def test_build_history_clear_removes_records(tmp_path):
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    history_file = data_dir / "build_history.json"
    history_file.write_text(json.dumps([{"build_id": "b1", "app_name": "alpha", "status": "success"}]),
                            encoding="utf-8")

    result = CliRunner().invoke(cli, ["build-history"], env=env_for(tmp_path))
    assert "Build b1" in result.output

    result = CliRunner().invoke(cli, ["build-history", "--clear"], env=env_for(tmp_path))
    assert result.exit_code == 0
    assert "Build history cleared." in result.output
    assert not history_file.exists()
