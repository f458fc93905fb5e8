#!/usr/bin/env python3
"""
Production server runner for the agentic SQL API.

Databases live in process memory, so the server always runs a single
worker; snapshots in the configured store survive restarts.
"""

import sys
from pathlib import Path

# Add the src directory to the Python path
project_root = Path(__file__).parent.parent
src_path = project_root / "src"
sys.path.insert(0, str(src_path))

from dotenv import load_dotenv

env_file = project_root / ".env"
if env_file.exists():
    load_dotenv(env_file)
    print(f"✓ Loaded environment variables from {env_file}")
else:
    print(f"⚠ No .env file found at {env_file}")
    print("  Ensure environment variables are set via your deployment system")

if __name__ == "__main__":
    import uvicorn
    from agentic_sql.config import get_settings

    settings = get_settings()
    server_config = settings.server

    if server_config.workers != 1:
        print(f"⚠ SERVER__WORKERS={server_config.workers} ignored: open databases are per-process")

    production_config = {
        "app": server_config.app_module,
        "host": server_config.host,
        "port": server_config.port,
        "workers": 1,
        "reload": False,  # Never reload in production
        "log_config": None,  # Use our structured logging
        "access_log": False,  # We handle access logging via middleware
        "server_header": False,
        "date_header": False,
    }

    print("🚀 Starting agentic SQL API production server...")
    print(f"⚙️  Configuration: {server_config.app_module}")
    print(f"🌐 Listening: {server_config.host}:{server_config.port}")
    print(f"💾 Snapshots: {settings.storage.backend.value}")
    print(f"📊 API Documentation: http://{server_config.host}:{server_config.port}/docs")
    print()

    uvicorn.run(**production_config)
