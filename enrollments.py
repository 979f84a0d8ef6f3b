import logging
from typing import Any, Dict, List

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError

from courses import COURSE_NOT_FOUND, find_course, instructor_names, serialize_course
from database import COURSES, ENROLLMENTS, get_documents, parse_object_id, to_public, utcnow_iso
from errors import DuplicateEnrollment, InvalidVideoIndex, NotFoundError, NotFoundOrForbidden
from progress import derive_progress

logger = logging.getLogger(__name__)

ENROLLMENT_NOT_OWNED = "Enrollment not found or access denied"


async def populate_enrollments(
    db: AsyncIOMotorDatabase, enrollments: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Embed each enrollment's course and add the derived progress fields.

    Enrollments whose course is gone are dropped.
    """
    course_ids = list({e["course"] for e in enrollments})
    courses = {
        course["_id"]: course
        for course in await get_documents(db, COURSES, {"_id": {"$in": course_ids}})
    }
    names = await instructor_names(db, (c.get("instructor") for c in courses.values()))

    populated = []
    for enrollment in enrollments:
        course = courses.get(enrollment["course"])
        if course is None:
            continue
        doc = to_public(enrollment)
        doc["course"] = serialize_course(course, names)
        doc.update(derive_progress(enrollment.get("progress", []), len(course.get("videos", []))))
        populated.append(doc)
    return populated


async def enroll(db: AsyncIOMotorDatabase, student_id: ObjectId, course_id: str) -> Dict[str, Any]:
    course = await find_course(db, course_id)
    if course is None:
        raise NotFoundError(COURSE_NOT_FOUND)

    doc = {
        "student": student_id,
        "course": course["_id"],
        "progress": [],
        "enrolledAt": utcnow_iso(),
    }
    try:
        result = await db[ENROLLMENTS].insert_one(doc)
    except DuplicateKeyError:
        raise DuplicateEnrollment()

    # the course may have been deleted between the lookup and the insert
    if await db[COURSES].find_one({"_id": course["_id"]}, {"_id": 1}) is None:
        await db[ENROLLMENTS].delete_one({"_id": result.inserted_id})
        raise NotFoundError(COURSE_NOT_FOUND)

    logger.info("Student %s enrolled in course %s", student_id, course["_id"])
    enrollment = await db[ENROLLMENTS].find_one({"_id": result.inserted_id})
    populated = await populate_enrollments(db, [enrollment])
    if not populated:
        raise NotFoundError(COURSE_NOT_FOUND)
    return populated[0]


async def list_enrollments(db: AsyncIOMotorDatabase, student_id: ObjectId) -> List[Dict[str, Any]]:
    enrollments = await get_documents(
        db,
        ENROLLMENTS,
        {"student": student_id},
        sort=[("enrolledAt", DESCENDING), ("_id", DESCENDING)],
    )
    return await populate_enrollments(db, enrollments)


async def mark_video_completed(
    db: AsyncIOMotorDatabase, enrollment_id: str, student_id: ObjectId, video_index: int
) -> Dict[str, int]:
    """Add video_index to the enrollment's progress set.

    Marking an already completed video is a no-op. Returns the recomputed
    derived fields.
    """
    oid = parse_object_id(enrollment_id)
    if oid is None:
        raise NotFoundOrForbidden(ENROLLMENT_NOT_OWNED)
    owned = {"_id": oid, "student": student_id}
    enrollment = await db[ENROLLMENTS].find_one(owned)
    if enrollment is None:
        raise NotFoundOrForbidden(ENROLLMENT_NOT_OWNED)

    course = await db[COURSES].find_one({"_id": enrollment["course"]}, {"videos": 1})
    if course is None:
        raise NotFoundOrForbidden(ENROLLMENT_NOT_OWNED)
    total_videos = len(course.get("videos", []))

    if isinstance(video_index, bool) or not isinstance(video_index, int):
        raise InvalidVideoIndex()
    if not 0 <= video_index < total_videos:
        raise InvalidVideoIndex()

    updated = await db[ENROLLMENTS].find_one_and_update(
        owned,
        {"$addToSet": {"progress": video_index}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise NotFoundOrForbidden(ENROLLMENT_NOT_OWNED)
    return derive_progress(updated.get("progress", []), total_videos)
