from fastapi import APIRouter, HTTPException, Request

from vmkite.metrics import metrics
from vmkite.services.runner import Runner


router = APIRouter()


def _runner(request: Request) -> Runner:
    runner = getattr(request.app.state, "runner", None)
    if runner is None:
        raise HTTPException(status_code=503, detail="runner not started")
    return runner


@router.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@router.get("/metrics")
def get_metrics() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/v1/jobs")
def list_tracked_jobs(request: Request) -> list[dict]:
    runner = _runner(request)
    return [
        {
            "job_id": tracked.job.id,
            "pipeline": tracked.job.pipeline,
            "build_number": tracked.job.build_number,
            "vmdk": tracked.job.intent.disk_image,
            "guest_id": tracked.job.intent.guest_identity,
            "vm_name": tracked.vm_name,
            "vm_path": tracked.vm_path,
            "created_at": tracked.created_at.isoformat(),
        }
        for tracked in runner.tracked_jobs()
    ]
