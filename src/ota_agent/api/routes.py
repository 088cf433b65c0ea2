"""API route handlers for the agent status endpoints."""

from fastapi import APIRouter, Request

from ota_agent.api.models import JobResponse, JobsResponse, SessionData

router = APIRouter(prefix="/api/v1.0")


@router.get("/jobs", response_model=JobsResponse)
async def get_jobs(request: Request):
    """GET /api/v1.0/jobs - Sessions handled since the agent started.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": [
                {
                    "job_id": "mender_install-7cf96d",
                    "operation": "install",
                    "state": "installing",
                    "step": "installing",
                    "version_number": 3,
                    ...
                }
            ],
            "active": ["mender_install-7cf96d"]
        }
    """
    orchestrator = request.app.state.orchestrator
    dispatcher = request.app.state.dispatcher
    sessions = [
        SessionData(**session.to_dict()) for session in orchestrator.sessions.values()
    ]
    return JobsResponse(data=sessions, active=dispatcher.active_jobs)


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, request: Request):
    """GET /api/v1.0/jobs/{job_id} - One session, code 404 if unknown."""
    session = request.app.state.orchestrator.sessions.get(job_id)
    if session is None:
        return JobResponse(code=404, msg=f"Job not found: {job_id}")
    return JobResponse(code=200, msg="success", data=SessionData(**session.to_dict()))
