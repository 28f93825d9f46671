"""History analytics over the cumulative records written at session end.

Builds DataFrames from a class document's ``studentProgress`` map and
computes the per-student and per-class summaries shown in history views.
Read-only: nothing here writes to the store.
"""
from collections import Counter
from typing import Any, Dict, List, Optional

import pandas as pd

from tutorsync.domain.session import ASSESSMENT_DIMENSIONS

COLUMNS = ["studentId", "sessionId", "date", "book", "startPage", "endPage", *ASSESSMENT_DIMENSIONS]


# ----------------
# HELPER FUNCTIONS
# ----------------

def _safe_mean(series: Optional[pd.Series]) -> Optional[float]:
    """Mean rounded to two decimals; None for empty input."""
    if series is None or series.empty:
        return None
    value = series.mean()
    return None if pd.isna(value) else round(float(value), 2)


def _top(counter: Counter, n: int = 3) -> List[str]:
    return [label for label, _ in counter.most_common(n)]


def assessments_frame(class_doc: Dict[str, Any], student_id: Optional[str] = None) -> pd.DataFrame:
    """Flatten assessment entries into one row per (student, session)."""
    rows = []
    for sid, entry in (class_doc.get("studentProgress") or {}).items():
        if student_id is not None and sid != student_id:
            continue
        for item in entry.get("assessments") or []:
            scores = item.get("assessment") or {}
            rows.append({
                "studentId": sid,
                "sessionId": item.get("sessionId"),
                "date": item.get("date"),
                "book": item.get("book"),
                "startPage": item.get("startPage"),
                "endPage": item.get("endPage"),
                **{dim: scores.get(dim, 0) for dim in ASSESSMENT_DIMENSIONS},
            })

    df = pd.DataFrame(rows, columns=COLUMNS)
    if not df.empty:
        df["date"] = pd.to_datetime(df["date"], utc=True, errors="coerce")
        df = df.sort_values("date").reset_index(drop=True)
    return df


# ----------------
# SUMMARIES
# ----------------

def student_history(class_doc: Dict[str, Any], student_id: str) -> Dict[str, Any]:
    """Summarize one student's cumulative record within a class."""
    entry = (class_doc.get("studentProgress") or {}).get(student_id) or {}
    df = assessments_frame(class_doc, student_id)

    if df.empty:
        return {
            "studentId": student_id,
            "exists": bool(entry),
            "totalSessions": len(entry.get("sessions") or []),
            "averages": {dim: None for dim in ASSESSMENT_DIMENSIONS},
            "overallAverage": None,
            "books": [],
            "lastPage": None,
            "topAreasOfImprovement": [],
            "topStrengths": [],
            "trend": [],
        }

    areas = Counter(a for item in entry.get("assessments") or [] for a in item.get("areasOfImprovement") or [])
    strengths = Counter(s for item in entry.get("assessments") or [] for s in item.get("strengths") or [])

    df["overall"] = df[list(ASSESSMENT_DIMENSIONS)].mean(axis=1)
    last = df.iloc[-1]

    return {
        "studentId": student_id,
        "exists": True,
        "totalSessions": len(entry.get("sessions") or []),
        "averages": {dim: _safe_mean(df[dim]) for dim in ASSESSMENT_DIMENSIONS},
        "overallAverage": _safe_mean(df["overall"]),
        "books": df["book"].dropna().unique().tolist(),
        "lastPage": None if pd.isna(last["endPage"]) else int(last["endPage"]),
        "topAreasOfImprovement": _top(areas),
        "topStrengths": _top(strengths),
        "trend": [
            {
                "sessionId": row.sessionId,
                "date": row.date.isoformat() if not pd.isna(row.date) else None,
                "overall": round(float(row.overall), 2),
            }
            for row in df.itertuples()
        ],
    }


def class_history(class_doc: Dict[str, Any]) -> Dict[str, Any]:
    """Summarize assessment averages across every student of a class."""
    df = assessments_frame(class_doc)
    student_ids = list(class_doc.get("studentIds") or [])

    if df.empty:
        return {
            "classId": class_doc.get("id"),
            "totalStudents": len(student_ids),
            "assessedStudents": 0,
            "totalAssessments": 0,
            "averages": {dim: None for dim in ASSESSMENT_DIMENSIONS},
            "students": [],
        }

    df["overall"] = df[list(ASSESSMENT_DIMENSIONS)].mean(axis=1)
    per_student = (
        df.groupby("studentId")
        .agg(sessions=("sessionId", "count"), overall=("overall", "mean"))
        .sort_values("overall", ascending=False)
    )

    return {
        "classId": class_doc.get("id"),
        "totalStudents": len(student_ids),
        "assessedStudents": int(per_student.shape[0]),
        "totalAssessments": int(df.shape[0]),
        "averages": {dim: _safe_mean(df[dim]) for dim in ASSESSMENT_DIMENSIONS},
        "students": [
            {"studentId": sid, "sessions": int(row.sessions), "overallAverage": round(float(row.overall), 2)}
            for sid, row in per_student.iterrows()
        ],
    }
