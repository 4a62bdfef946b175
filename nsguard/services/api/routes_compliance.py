"""
Compliance routes: scan, baseline, report, control catalogue.
"""

from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse

from nsguard.services.api.deps import as_utc, get_engine
from nsguard.services.compliance.controls import CONTROLS
from nsguard.services.compliance.reporter import ReportPeriod
from nsguard.services.shared.schemas import BaselineRequest, BaselineSummary

router = APIRouter()

DEFAULT_REPORT_WINDOW = timedelta(days=1)


def _summary(baseline) -> BaselineSummary:
    return BaselineSummary(
        hash=baseline.hash,
        version=baseline.version,
        objects=len(baseline.content),
        taken_at=baseline.taken_at,
    )


@router.post("/compliance/scan")
def scan(engine=Depends(get_engine)):
    return [v.model_dump(mode="json") for v in engine.detector.scan()]


@router.post("/compliance/baseline", response_model=BaselineSummary)
def set_baseline(req: Optional[BaselineRequest] = None, engine=Depends(get_engine)):
    req = req or BaselineRequest()
    if req.baseline is None:
        baseline = engine.detector.capture_baseline(actor=req.actor)
    else:
        baseline = engine.detector.set_baseline(req.baseline, actor=req.actor)
    return _summary(baseline)


@router.get("/compliance/baseline")
def get_baseline(engine=Depends(get_engine)):
    baseline = engine.detector.baseline
    if baseline is None:
        raise HTTPException(status_code=404, detail="No baseline set")
    return baseline.model_dump(mode="json")


@router.get("/compliance/report")
def report(
    start:  Optional[datetime] = None,
    end:    Optional[datetime] = None,
    format: str = Query(default="json", pattern="^(json|text)$"),
    engine=Depends(get_engine),
):
    """Defaults to the last 24 hours. format=text returns the plain-text rendering."""
    end = as_utc(end) or engine.clock()
    start = as_utc(start) or end - DEFAULT_REPORT_WINDOW
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")

    result = engine.reporter.generate(ReportPeriod(start=start, end=end))
    if format == "text":
        return PlainTextResponse(result.to_text())
    return result.to_dict()


@router.get("/compliance/controls")
def list_controls():
    return [c.to_dict() for c in CONTROLS]
