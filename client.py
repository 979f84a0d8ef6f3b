"""
Async client for the LearnTube API.

Session holds the signed-in user explicitly: it is populated on login or
register, cleared on logout and can be saved and rehydrated between runs.
The role it carries is a display hint only; the server re-derives the role
from the token on every call.

CourseView keeps the state of the learning page for one enrollment. After
every completion it re-reads the enrollment from the server, since the
completion figures are server-derived.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

import httpx

from progress import average_percentage

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


class ApiError(Exception):
    def __init__(self, message: str, status_code: int, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.retryable = retryable


class Session:
    def __init__(self, token: Optional[str] = None, user: Optional[Dict[str, Any]] = None):
        self.token = token
        self.user = user

    @property
    def is_authenticated(self) -> bool:
        return bool(self.token)

    @property
    def role(self) -> Optional[str]:
        return self.user.get("role") if self.user else None

    @property
    def is_instructor(self) -> bool:
        return self.role == "instructor"

    @property
    def is_student(self) -> bool:
        return self.role == "student"

    def populate(self, data: Dict[str, Any]) -> None:
        if not data or not data.get("token") or not data.get("user"):
            raise ValueError("Cannot store invalid user data")
        self.token = data["token"]
        self.user = data["user"]

    def clear(self) -> None:
        self.token = None
        self.user = None

    def save(self, path: Union[str, Path]) -> None:
        Path(path).write_text(json.dumps({"token": self.token, "user": self.user}))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Session":
        path = Path(path)
        if not path.exists():
            return cls()
        try:
            data = json.loads(path.read_text())
        except ValueError:
            logger.warning("Discarding unreadable session file %s", path)
            return cls()
        return cls(token=data.get("token"), user=data.get("user"))


class LearnTubeClient:
    def __init__(
        self,
        base_url: str,
        session: Optional[Session] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.session = session or Session()
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "LearnTubeClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def _request(
        self, method: str, path: str, json_body: Any = None, params: Any = None, auth: bool = True
    ) -> Dict[str, Any]:
        headers = {}
        if auth and self.session.token:
            headers["Authorization"] = f"Bearer {self.session.token}"
        try:
            response = await self._http.request(
                method, path, json=json_body, params=params, headers=headers
            )
        except httpx.TimeoutException:
            raise ApiError("Request timed out", 0, retryable=True)
        except httpx.TransportError as exc:
            raise ApiError(f"Network error: {exc}", 0, retryable=True)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_error:
            message = data.get("message") if isinstance(data, dict) else None
            raise ApiError(
                message or response.reason_phrase or "An error occurred",
                response.status_code,
                retryable=response.status_code >= 500,
            )
        return data

    # Auth
    async def register(self, name: str, email: str, password: str, role: str) -> Dict[str, Any]:
        data = await self._request(
            "POST",
            "/auth/register",
            {"name": name, "email": email, "password": password, "role": role},
            auth=False,
        )
        self.session.populate(data)
        return data["user"]

    async def login(self, email: str, password: str) -> Dict[str, Any]:
        data = await self._request(
            "POST", "/auth/login", {"email": email, "password": password}, auth=False
        )
        self.session.populate(data)
        return data["user"]

    def logout(self) -> None:
        self.session.clear()

    async def current_user(self) -> Dict[str, Any]:
        data = await self._request("GET", "/auth/user")
        self.session.user = data["user"]
        return data["user"]

    # Courses
    async def create_course(self, course: Dict[str, Any]) -> Dict[str, Any]:
        return (await self._request("POST", "/courses", course))["course"]

    async def update_course(self, course_id: str, course: Dict[str, Any]) -> Dict[str, Any]:
        return (await self._request("PUT", f"/courses/{course_id}", course))["course"]

    async def delete_course(self, course_id: str) -> str:
        return (await self._request("DELETE", f"/courses/{course_id}"))["message"]

    async def instructor_courses(self) -> List[Dict[str, Any]]:
        return (await self._request("GET", "/courses/instructor"))["courses"]

    async def courses(self, category: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"category": category} if category else None
        return (await self._request("GET", "/courses", params=params, auth=False))["courses"]

    async def course(self, course_id: str) -> Dict[str, Any]:
        return (await self._request("GET", f"/courses/{course_id}", auth=False))["course"]

    async def categories(self) -> List[Dict[str, Any]]:
        return (await self._request("GET", "/categories", auth=False))["categories"]

    # Enrollments
    async def enroll(self, course_id: str) -> Dict[str, Any]:
        return (await self._request("POST", "/enrollments", {"courseId": course_id}))["enrollment"]

    async def enrollments(self) -> List[Dict[str, Any]]:
        return (await self._request("GET", "/enrollments"))["enrollments"]

    async def mark_video_completed(self, enrollment_id: str, video_index: int) -> Dict[str, Any]:
        return await self._request(
            "PUT", f"/enrollments/{enrollment_id}/progress", {"videoIndex": video_index}
        )

    # Dashboards
    async def student_dashboard(self) -> Dict[str, int]:
        return student_dashboard(await self.enrollments())

    async def instructor_dashboard(self) -> Dict[str, Any]:
        return instructor_dashboard(await self.instructor_courses())


def student_dashboard(enrollments: List[Dict[str, Any]]) -> Dict[str, int]:
    """Summary figures for a student's enrollments."""
    return {
        "enrolledCourses": len(enrollments),
        "completedVideos": sum(e.get("completedVideos", 0) for e in enrollments),
        "averageProgress": average_percentage(e.get("completionPercentage", 0) for e in enrollments),
    }


def instructor_dashboard(courses: List[Dict[str, Any]], recent: int = 3) -> Dict[str, Any]:
    """Summary figures for an instructor's courses, with the newest few."""
    newest = sorted(courses, key=lambda c: c.get("createdAt") or "", reverse=True)
    return {
        "totalCourses": len(courses),
        "totalEnrollments": sum(c.get("enrollmentCount") or 0 for c in courses),
        "totalVideos": sum(len(c.get("videos", [])) for c in courses),
        "recentCourses": newest[:recent],
    }


class CourseView:
    """Learning view for a single enrollment."""

    def __init__(self, client: LearnTubeClient, enrollment_id: str):
        self.client = client
        self.enrollment_id = enrollment_id
        self.enrollment: Optional[Dict[str, Any]] = None
        self.current_index = 0
        self.completed: Set[int] = set()

    @property
    def videos(self) -> List[Dict[str, Any]]:
        if not self.enrollment:
            return []
        return self.enrollment["course"].get("videos", [])

    @property
    def current_video(self) -> Optional[Dict[str, Any]]:
        videos = self.videos
        return videos[self.current_index] if 0 <= self.current_index < len(videos) else None

    @property
    def completion_percentage(self) -> int:
        return self.enrollment["completionPercentage"] if self.enrollment else 0

    async def refresh(self) -> Dict[str, Any]:
        for enrollment in await self.client.enrollments():
            if enrollment["_id"] == self.enrollment_id:
                self.enrollment = enrollment
                self.completed = set(enrollment.get("progress", []))
                if self.current_index >= len(self.videos):
                    self.current_index = max(len(self.videos) - 1, 0)
                return enrollment
        self.enrollment = None
        self.completed = set()
        raise ApiError("Enrollment not found", 404)

    async def open(self) -> Dict[str, Any]:
        """Load the enrollment and resume at the first video not yet completed."""
        enrollment = await self.refresh()
        if self.completed and self.completion_percentage < 100:
            self.current_index = next(
                (i for i in range(len(self.videos)) if i not in self.completed), 0
            )
        return enrollment

    def select(self, index: int) -> None:
        if not 0 <= index < len(self.videos):
            raise IndexError(index)
        self.current_index = index

    def is_completed(self, index: int) -> bool:
        return index in self.completed

    async def complete_current(self) -> Dict[str, Any]:
        await self.client.mark_video_completed(self.enrollment_id, self.current_index)
        enrollment = await self.refresh()
        if self.current_index < len(self.videos) - 1:
            self.current_index += 1
        return enrollment
