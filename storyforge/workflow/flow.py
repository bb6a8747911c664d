"""Prefect flow wrapper for the workflow engine.

Each phase runs as a Prefect task so runs show up phase by phase when a
Prefect server is connected. The business logic stays in WorkflowEngine;
tests drive the engine directly.
"""

import logging

from prefect import flow, task

from storyforge.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


@task(
    retries=0,
    name="phase",
    description="Run the handler for the engine's current phase",
)
def task_phase(engine: WorkflowEngine) -> str:
    """Run one phase. Agent retries are the review loop's job, not Prefect's."""
    engine.step()
    return engine.phase


@flow(name="storyforge_run", retries=0, validate_parameters=False)
def run_flow(engine: WorkflowEngine) -> int:
    """Run or resume until a terminal phase or an interrupt.

    Returns: process exit code
    """
    logger.info(f"Starting flow for run {engine.state.run_id} at {engine.phase}")
    while engine.should_continue():
        task_phase.with_options(name=engine.phase)(engine)
    return engine.finish()
