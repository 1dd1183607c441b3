"""API route package: imports all routers for main.py."""

from pastprep.api.health import router as health_router  # noqa: F401
from pastprep.api.users import router as users_router  # noqa: F401
from pastprep.api.exams import router as exams_router  # noqa: F401
from pastprep.api.practice import router as practice_router  # noqa: F401
