# Data factories for test data generation

from tests.support.factories.image_factory import (
    create_landscape_png,
    create_png_bytes,
    create_test_image,
)
from tests.support.factories.job_factory import (
    CONSTITUTION,
    build_preview,
    create_book_with_job,
    create_outline,
    set_job_updated_at,
)

__all__ = [
    # Job factories
    "CONSTITUTION",
    "build_preview",
    "create_book_with_job",
    "create_outline",
    "set_job_updated_at",
    # Image factories
    "create_test_image",
    "create_png_bytes",
    "create_landscape_png",
]
