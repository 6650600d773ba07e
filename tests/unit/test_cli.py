"""Unit tests for the topfrag command line."""

from unittest.mock import MagicMock, patch

from click.testing import CliRunner

from topfrag_pipeline.cli import cli


def mock_database_manager(mock_class):
    db = MagicMock()
    mock_class.from_env.return_value.__enter__.return_value = db
    mock_class.from_env.return_value.__exit__.return_value = False
    return db


@patch("topfrag_pipeline.cli.DatabaseManager")
def test_create_group(mock_class, tmp_path):
    db = mock_database_manager(mock_class)
    db.create_group.return_value = 4
    db.add_group_member.side_effect = [True, False]

    result = CliRunner().invoke(
        cli,
        ["--env-file", str(tmp_path / ".env"), "create-group", "alpha", "1", "2"],
    )

    assert result.exit_code == 0
    assert "Group 'alpha' (id 4): 1 new member(s)" in result.output


@patch("topfrag_pipeline.cli.JobTracker")
@patch("topfrag_pipeline.cli.DatabaseManager")
def test_expire_jobs(mock_class, mock_tracker_class, tmp_path):
    mock_database_manager(mock_class)
    mock_tracker_class.return_value.fail_stale_jobs.return_value = 2

    result = CliRunner().invoke(
        cli, ["--env-file", str(tmp_path / ".env"), "expire-jobs", "--timeout", "30"]
    )

    assert result.exit_code == 0
    assert "Failed 2 stale job(s)" in result.output
    mock_tracker_class.return_value.fail_stale_jobs.assert_called_once_with(timeout_minutes=30)


@patch("topfrag_pipeline.cli.DatabaseManager")
def test_init_db(mock_class, tmp_path):
    db = mock_database_manager(mock_class)

    result = CliRunner().invoke(cli, ["--env-file", str(tmp_path / ".env"), "init-db"])

    assert result.exit_code == 0
    db.create_schema.assert_called_once()
