#!/usr/bin/env python3
"""
Operational commands for the demo pipeline.

Example:
    topfrag init-db
    topfrag create-group "Team Pew" 76561198000000001 76561198000000002
    topfrag submit-demo /data/demos/match.dem --priority high
    topfrag expire-jobs --timeout 120
"""

import logging
import os

import click
from dotenv import load_dotenv

from topfrag_pipeline.core.database_manager import DatabaseManager
from topfrag_pipeline.core.rabbitmq_publisher import PRIORITIES, RabbitMQPublisher
from topfrag_pipeline.services.job_tracker import JobTracker
from topfrag_pipeline.workers.demo_upload_worker import DemoUploadService


@click.group()
@click.option("--env-file", default=".env", help="Path to .env file (default: .env)")
@click.option("--log-level", default="INFO", help="Log level (default: INFO)")
@click.pass_context
def cli(ctx: click.Context, env_file: str, log_level: str):
    """Manage the demo processing pipeline."""
    load_dotenv(env_file)

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.obj = logging.getLogger("topfrag_pipeline.cli")


@cli.command("init-db")
def init_db():
    """Create all tables and indexes (idempotent)."""
    with DatabaseManager.from_env(os.environ) as db:
        db.create_schema()
    click.echo("Schema created")


@cli.command("create-group")
@click.argument("name")
@click.argument("steam_ids", nargs=-1)
def create_group(name: str, steam_ids):
    """Create a leaderboard group and add members by steam id."""
    with DatabaseManager.from_env(os.environ) as db:
        group_id = db.create_group(name)
        added = sum(1 for steam_id in steam_ids if db.add_group_member(group_id, steam_id))
    click.echo(f"Group '{name}' (id {group_id}): {added} new member(s)")


@cli.command("submit-demo")
@click.argument("file_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--priority",
    type=click.Choice(sorted(PRIORITIES)),
    default="default",
    help="Queue priority (high for reprocessing)",
)
@click.pass_obj
def submit_demo(logger: logging.Logger, file_path: str, priority: str):
    """Create a processing job for a demo and queue its upload."""
    with DatabaseManager.from_env(os.environ) as db:
        with RabbitMQPublisher() as publisher:
            service = DemoUploadService(JobTracker(db, logger=logger), publisher, logger=logger)
            job_id = service.submit_demo(os.path.abspath(file_path), priority=priority)
    click.echo(job_id)


@cli.command("expire-jobs")
@click.option("--timeout", default=120, type=int, help="Minutes without updates (default: 120)")
@click.pass_obj
def expire_jobs(logger: logging.Logger, timeout: int):
    """Fail jobs the parser service stopped reporting on."""
    with DatabaseManager.from_env(os.environ) as db:
        failed = JobTracker(db, logger=logger).fail_stale_jobs(timeout_minutes=timeout)
    click.echo(f"Failed {failed} stale job(s)")


if __name__ == "__main__":
    cli()
