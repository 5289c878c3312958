"""Run the sample campaign process end to end.

Needs an ``OPENAI_API_KEY`` for the workers. The client approval is
granted from this script once the run pauses.
"""

import asyncio
from pathlib import Path

from flowgrid import FlowRunner, RunStatus, load_catalog, load_config

GUIDES = Path(__file__).parent


async def follow(runner: FlowRunner, run_id: str) -> None:
    """Print every live event of the run."""
    async for event in runner.channel.subscribe(run_id):
        if event.type == "step.update":
            step = event.data["step"]
            print(f"  [{step['status']}] {step['name']}")
        else:
            print(f"  {event.type}: {event.data.get('status')}")


async def main():
    config = load_config(str(GUIDES / "config.yaml"))
    runner = FlowRunner.from_config(load_catalog(GUIDES / "catalog.yaml"), config)

    run = await runner.start(
        "acme",
        "campaign",
        {"request": "Spring launch campaign for a plant-based snack brand"},
    )
    print(f"Started run {run.id}")
    watcher = asyncio.create_task(follow(runner, run.id))

    run = await runner.wait_for_status(
        run.id, {RunStatus.PAUSED, RunStatus.COMPLETED, RunStatus.FAILED}, timeout=600
    )
    if run.status == RunStatus.PAUSED:
        approval = (await runner.list_approvals("acme", "pending"))[0]
        print(f"Approving: {approval.title}")
        await runner.resolve_approval(
            approval.id, "acme", approved=True, decided_by="guide"
        )
        await runner.wait(run.id, timeout=600)

    await watcher
    detail = await runner.get_run(run.id, "acme")
    print(f"Run {run.id}: {detail.run.status.value}")
    for step in detail.steps:
        print(f"- {step.name} [{step.kind.value}] {step.status.value}")


if __name__ == "__main__":
    asyncio.run(main())
