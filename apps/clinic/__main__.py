"""
Run the clinic booking API with uvicorn.

Example:
  python -m apps.clinic --reload
"""
import os
import sys

import uvicorn


def main() -> None:
    reload = "--reload" in sys.argv[1:] or os.getenv("CLINIC_RELOAD", "false").lower() == "true"
    host = os.getenv("CLINIC_HOST", "0.0.0.0")
    port = int(os.getenv("CLINIC_PORT", "8000"))
    uvicorn.run(
        "apps.clinic.app.main:app",
        host=host,
        port=port,
        reload=reload,
        reload_dirs=["apps", "libs"] if reload else None,
    )


if __name__ == "__main__":
    main()
