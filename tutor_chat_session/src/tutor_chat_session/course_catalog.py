"""
Course Catalog

Read-only lookup of course/unit metadata and calibration question sets.
"""

import logging
from typing import Any, Dict, List, Optional

from tutor_chat_session.collaborators import UnitInfo
from tutor_chat_session.question_normalizer import normalize_questions

logger = logging.getLogger(__name__)


class StaticCourseCatalog:
    """
    Catalog built from plain dictionaries, e.g.

        {"BIOC202": {"courseName": "Biochemistry", "units": {
            "Unit 1": {"published": True, "passThreshold": 2, "questions": [...]}}}}

    Questions are normalized once, at load time.
    """

    def __init__(self, courses: Optional[Dict[str, Dict[str, Any]]] = None):
        self._units: Dict[tuple, UnitInfo] = {}
        for course_id, course in (courses or {}).items():
            for unit_name, unit in (course.get("units") or {}).items():
                self._units[(course_id, unit_name)] = UnitInfo(
                    course_id=course_id,
                    unit_name=unit_name,
                    course_name=course.get("courseName"),
                    published=bool(unit.get("published", True)),
                    questions=normalize_questions(unit.get("questions") or [], unit_name),
                    pass_threshold=unit.get("passThreshold"),
                )
        logger.info(f"📚 [CourseCatalog] Loaded {len(self._units)} units")

    def get_unit(self, course_id: str, unit_name: str) -> Optional[UnitInfo]:
        return self._units.get((course_id, unit_name))

    def units_for_course(self, course_id: str) -> List[UnitInfo]:
        return [unit for (cid, _), unit in self._units.items() if cid == course_id]
