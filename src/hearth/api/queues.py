"""Queue API routes — job counts and lazy worker phases.

Learn: Job counts come straight from Redis, so they are the same no matter
which process answers. Worker phases are local: a process only knows about
the lazy and always-on workers it started itself.
"""

from fastapi import APIRouter, Depends, HTTPException

from hearth.api.deps import get_runtime
from hearth.queue.config import QueueName
from hearth.queue.registry import QueueRegistryNotInitialized
from hearth.runtime import Runtime

router = APIRouter()


@router.get("/queues")
async def list_queues(runtime: Runtime = Depends(get_runtime)):
    """Job counts per queue plus this process's worker phases."""
    try:
        queues = runtime.queues.get_queues()
    except QueueRegistryNotInitialized as e:
        raise HTTPException(status_code=503, detail=str(e))

    counts = {name.value: await queue.get_job_counts() for name, queue in queues.items()}
    workers = runtime.workers.snapshot()
    for name, worker in runtime.always_on_workers.items():
        workers[name] = {
            "phase": "always_on",
            "is_running": worker.is_running,
            "in_flight": worker.in_flight,
        }
    return {"queues": counts, "workers": workers}


@router.get("/queues/{queue_name}/jobs/{job_id}")
async def get_job(queue_name: str, job_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        name = QueueName(queue_name)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {queue_name}")
    try:
        queue = runtime.queues.get(name)
    except QueueRegistryNotInitialized as e:
        raise HTTPException(status_code=503, detail=str(e))

    job = await queue.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {
        "id": job.id,
        "name": job.name,
        "state": await queue.get_state(job_id),
        "attempts_made": job.attempts_made,
        "failed_reason": job.failed_reason,
    }
