"""``python -m lugx_analytics`` – run the API under uvicorn."""

import os

import uvicorn

from lugx_analytics.utils.utils import get_env_bool, get_env_int


def main() -> None:
    uvicorn.run(
        "lugx_analytics.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=get_env_int("PORT", 8000),
        reload=get_env_bool("RELOAD"),
        # JSON logging is configured by the app itself
        log_config=None,
    )


if __name__ == "__main__":
    main()
