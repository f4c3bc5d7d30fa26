# Import every mapped class so Base.metadata knows all tables and foreign keys.
from app.models.model import Model  # noqa: F401
from app.models.model_row import ModelRow  # noqa: F401
from app.models.variant_row import VariantRow  # noqa: F401
from app.models.prompt_job import PromptGenerationJob  # noqa: F401
from app.models.job import Job  # noqa: F401
from app.models.generated_image import GeneratedImage  # noqa: F401
from app.models.variant_row_image import VariantRowImage  # noqa: F401
