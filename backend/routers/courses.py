import sqlite3
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import require_role, require_session
from database.db import (
    add_course,
    add_course_member,
    get_course_by_id,
    get_course_members,
    get_course_role,
    get_courses_for_user,
    get_user_by_id,
)

router = APIRouter()


class CourseCreate(BaseModel):
    code: str
    title: str


class MemberAdd(BaseModel):
    user_id: int
    role: Literal["student", "ta"] = "student"


def _course_dict(row) -> dict:
    return {
        "id": row[0],
        "code": row[1],
        "title": row[2],
        "teacher_id": row[3],
        "created_at": row[4],
    }


def require_course_access(course_id: int, session: dict) -> tuple:
    row = get_course_by_id(course_id)
    if not row:
        raise HTTPException(status_code=404, detail="Course not found.")
    if get_course_role(course_id, session["uid"]) is None:
        raise HTTPException(status_code=403, detail="Not a member of this course.")
    return row


def require_course_staff(course_id: int, session: dict) -> tuple:
    """Owner teacher or a TA of the course."""
    row = require_course_access(course_id, session)
    if get_course_role(course_id, session["uid"]) not in ("owner", "ta"):
        raise HTTPException(status_code=403, detail="Only course staff can do this.")
    return row


@router.get("/courses")
def courses(session: dict = Depends(require_session)):
    rows = get_courses_for_user(session["uid"], session["role"])
    return [_course_dict(r) for r in rows]


@router.post("/courses", status_code=201)
def create_course(payload: CourseCreate, session: dict = Depends(require_role("teacher"))):
    code = payload.code.strip()
    title = payload.title.strip()
    if not code or not title:
        raise HTTPException(status_code=400, detail="All fields are required.")

    try:
        new_id = add_course(code, title, session["uid"])
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Course code already exists.")

    return {"id": new_id, "code": code, "title": title, "teacher_id": session["uid"]}


@router.get("/courses/{course_id}")
def course_detail(course_id: int, session: dict = Depends(require_session)):
    row = require_course_access(course_id, session)
    return _course_dict(row)


@router.get("/courses/{course_id}/members")
def course_members(course_id: int, session: dict = Depends(require_session)):
    require_course_staff(course_id, session)
    return [
        {"user_id": r[0], "username": r[1], "full_name": r[2], "role": r[3]}
        for r in get_course_members(course_id)
    ]


@router.post("/courses/{course_id}/members", status_code=201)
def add_member(course_id: int, payload: MemberAdd, session: dict = Depends(require_role("teacher"))):
    row = get_course_by_id(course_id)
    if not row:
        raise HTTPException(status_code=404, detail="Course not found.")
    if int(row[3]) != session["uid"]:
        raise HTTPException(status_code=403, detail="Only the course teacher can add members.")

    user = get_user_by_id(payload.user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found.")
    if user[3] == "teacher":
        raise HTTPException(status_code=400, detail="Teachers cannot be course members.")

    try:
        add_course_member(course_id, payload.user_id, payload.role)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="User is already a member of this course.")

    return {"course_id": course_id, "user_id": payload.user_id, "role": payload.role}
