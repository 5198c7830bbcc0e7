import os

import uvicorn


def main():
    uvicorn.run(
        "chainload.app:app",
        host=os.getenv("CHAINLOAD_HOST", "0.0.0.0"),
        port=int(os.getenv("CHAINLOAD_PORT", "8000")),
        lifespan="on",
        log_config=None,  # chainload.logging_config owns logging
    )


if __name__ == "__main__":
    main()
