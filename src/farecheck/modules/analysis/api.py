from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from farecheck.core.db import db_session
from farecheck.modules.analysis.schemas import AnalysisRequest, ReanalysisSessionOut
from farecheck.modules.analysis.service import analyze, get_session, list_sessions
from farecheck.modules.cache.service import ComputationCache, get_cache

router = APIRouter(tags=["analysis"])


@router.post("/analysis", response_model=ReanalysisSessionOut)
def request_analysis(
    payload: AnalysisRequest,
    session: Session = Depends(db_session),
    cache: ComputationCache = Depends(get_cache),
) -> ReanalysisSessionOut:
    record = analyze(
        session,
        kind=payload.kind,
        range_start=payload.range_start,
        range_end=payload.range_end,
        cache=cache,
    )
    return ReanalysisSessionOut.model_validate(record, from_attributes=True)


@router.get("/analysis/sessions", response_model=list[ReanalysisSessionOut])
def list_sessions_endpoint(
    limit: int = Query(default=50, ge=1, le=500),
    session: Session = Depends(db_session),
) -> list[ReanalysisSessionOut]:
    return [
        ReanalysisSessionOut.model_validate(s, from_attributes=True)
        for s in list_sessions(session, limit=limit)
    ]


@router.get("/analysis/sessions/{session_id}", response_model=ReanalysisSessionOut)
def get_session_endpoint(
    session_id: uuid.UUID,
    session: Session = Depends(db_session),
) -> ReanalysisSessionOut:
    record = get_session(session, session_id=session_id)
    return ReanalysisSessionOut.model_validate(record, from_attributes=True)
