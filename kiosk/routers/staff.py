import sqlite3

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from kiosk.recognizer import embedding_from_image
from kiosk.security import require_session
from kiosk.services.hub import terminal_hub
from kiosk_db.db import (
    add_face_embedding,
    add_staff,
    deactivate_face_embedding,
    deactivate_staff,
    get_all_staff,
    get_face_embedding,
    get_staff,
    get_staff_attendance_month,
    list_face_embeddings,
    set_primary_embedding,
)

router = APIRouter(dependencies=[Depends(require_session)])


def _staff_or_404(staff_id: int) -> dict:
    staff = get_staff(staff_id)
    if not staff:
        raise HTTPException(status_code=404, detail="Staff not found.")
    return staff


@router.get("/staff")
def staff_list():
    return get_all_staff()


@router.get("/staff/{staff_id}/attendance")
def staff_attendance(staff_id: int, month: str):
    # month format: YYYY-MM
    staff = _staff_or_404(staff_id)

    rows = get_staff_attendance_month(staff_id, month)
    return {
        "staff": staff,
        "month": month,
        "rows": rows,
        "total_hours": round(sum(r["total_hours"] or 0.0 for r in rows), 2),
        "overtime_hours": round(sum(r["overtime_hours"] or 0.0 for r in rows), 2),
    }


@router.post("/staff/{staff_id}/deactivate")
def retire_staff(staff_id: int):
    _staff_or_404(staff_id)
    changed = deactivate_staff(staff_id)
    return {"ok": True, "changed": changed, "staff": get_staff(staff_id)}


@router.get("/staff/{staff_id}/embeddings")
def staff_embeddings(staff_id: int):
    _staff_or_404(staff_id)
    return list_face_embeddings(staff_id)


@router.post("/staff/embeddings/{embedding_id}/deactivate")
def retire_embedding(embedding_id: int):
    if not get_face_embedding(embedding_id):
        raise HTTPException(status_code=404, detail="Embedding not found.")
    changed = deactivate_face_embedding(embedding_id)
    return {"ok": True, "changed": changed, "embedding": get_face_embedding(embedding_id)}


@router.post("/staff/embeddings/{embedding_id}/primary")
def make_primary_embedding(embedding_id: int):
    embedding = get_face_embedding(embedding_id)
    if not embedding:
        raise HTTPException(status_code=404, detail="Embedding not found.")
    if not embedding["is_active"]:
        raise HTTPException(status_code=409, detail="Only an active embedding can be primary.")
    return set_primary_embedding(embedding_id)


@router.post("/staff/enroll")
async def enroll_staff(
    full_name: str = Form(...),
    employee_id: str = Form(...),
    role: str | None = Form(default=None),
    files: list[UploadFile] = File(...),
):
    full_name = full_name.strip()
    employee_id = employee_id.strip()
    if not full_name or not employee_id:
        raise HTTPException(status_code=400, detail="Full name and employee ID are required.")

    # Only accept JPG/PNG
    valid_files = [f for f in files if f.content_type in ("image/jpeg", "image/png")]
    if not valid_files:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    extractor = terminal_hub.extractor_factory()
    embeddings = []
    rejected: dict[str, str] = {}
    for f in valid_files:
        vector, reason = embedding_from_image(await f.read(), extractor)
        if vector is None:
            rejected[f.filename or f"file_{len(rejected) + 1}"] = reason or "no_face"
            continue
        embeddings.append(vector)

    # Insert staff ONLY IF at least one usable face exists
    if not embeddings:
        raise HTTPException(
            status_code=422,
            detail={"message": "No usable face found in the uploaded images.", "rejected": rejected},
        )

    try:
        new_id = add_staff(full_name, employee_id, (role or "").strip() or None)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Employee ID already exists.")

    for vector in embeddings:
        add_face_embedding(new_id, vector)

    return {
        "id": new_id,
        "full_name": full_name,
        "employee_id": employee_id,
        "role": role,
        "embeddings": len(embeddings),
        "rejected": rejected,
    }
