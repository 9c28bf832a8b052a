from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "postgresql+asyncpg://access_admin:access_secret@db:5432/access_db"
    JWT_SECRET: str = "access-jwt-secret-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRY_MINUTES: int = 480
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]
    LOG_LEVEL: str = "INFO"
    # JSON file replacing the built-in permission catalog
    PERMISSION_CATALOG_PATH: str | None = None
    SEED_SUPER_ROLE: bool = True
    # Open editor drafts kept in memory
    MAX_OPEN_DRAFTS: int = 200
    DRAFT_IDLE_TTL_SECONDS: int = 3600

    class Config:
        env_file = ".env"


settings = Settings()
