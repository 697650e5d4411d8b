from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    env: str = "dev"
    secret_key: str = "change_me_super_secret"
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 30
    database_url: str = "postgresql+psycopg2://pricing:pricing@db:5432/pricing"
    tenant_header: str = "X-Tenant-ID"
    backend_cors_origins: str = "http://localhost:5173"
    log_level: str = "INFO"

    # Plans that are not allowed to touch stock movements
    free_plans: str = "gratuito,free"

    # Bounded retry for lock contention on the product row
    movement_max_retries: int = 3
    movement_retry_backoff: float = 0.05

    @property
    def cors_origins(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        origins = self.backend_cors_origins
        return [origin.strip() for origin in origins.split(",") if origin.strip()]

    @property
    def free_plan_names(self) -> List[str]:
        return [plan.strip().lower() for plan in self.free_plans.split(",") if plan.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
