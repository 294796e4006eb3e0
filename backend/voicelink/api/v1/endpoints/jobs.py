from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from voicelink.core.database import get_db
from voicelink.schemas.voice import JobStatusResponse
from voicelink.services.jobs import get_job_status

router = APIRouter()


@router.get("/{job_id}", response_model=JobStatusResponse)
def job_status(job_id: str, db: Session = Depends(get_db)) -> JobStatusResponse:
    status = get_job_status(db, job_id)
    if status is None:
        raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
    return JobStatusResponse(**status)
