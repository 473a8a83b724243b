#!/usr/bin/env python3
"""
Local development server for the identity sync API.
Runs the API with in-process sync workers so no Celery worker is needed locally.
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

os.environ.setdefault('ENVIRONMENT', 'development')
# Without DATABASE_URL or Supabase settings the API uses ./identity_sync.db (sqlite).
if not os.getenv('DATABASE_URL') and not (os.getenv('SUPABASE_PROJECT_REF') and os.getenv('SUPABASE_DB_PASSWORD')):
    print("WARNING: no DATABASE_URL / Supabase configuration, using local sqlite ./identity_sync.db")

if __name__ == "__main__":
    import uvicorn
    from identity_sync.infrastructure.db import Base, engine
    import identity_sync.models  # noqa: F401
    from identity_sync.workers import SyncWorkerPool

    Base.metadata.create_all(bind=engine)
    pool = SyncWorkerPool()
    pool.start()

    print("Starting identity sync API")
    print("Docs: http://localhost:8000/docs")
    print("Health Check: http://localhost:8000/health")
    print("Press Ctrl+C to stop\n")

    try:
        uvicorn.run(
            "identity_sync.api.main:app",
            host=os.getenv("API_HOST", "0.0.0.0"),
            port=int(os.getenv("API_PORT", "8000")),
            log_level="info",
        )
    finally:
        pool.stop()
