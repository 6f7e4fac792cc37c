import os

from dotenv import load_dotenv
import uvicorn

load_dotenv()


def run_migrations():
    """Run Alembic migrations."""
    from alembic.config import Config
    from alembic import command

    alembic_cfg = Config("alembic.ini")
    print("[STARTUP] Running database migrations...")
    command.upgrade(alembic_cfg, "head")
    print("[STARTUP] Migrations complete!")


if __name__ == "__main__":
    # Tables are created by app.main on startup; migrations are opt-in
    if os.getenv("RUN_MIGRATIONS") == "true":
        run_migrations()

    from app.core.config import settings

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=os.getenv("ENV") == "development",
        log_level=settings.LOG_LEVEL.lower(),
        workers=1,
    )
