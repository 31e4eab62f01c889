import os


if __name__ == "__main__":
    import uvicorn

    SERVER_HOST = os.getenv("SERVER_HOST", "0.0.0.0")
    SERVER_PORT = os.getenv("SERVER_PORT", "8000")
    uvicorn.run(
        "livequiz.api.main:app",
        host=SERVER_HOST,
        port=int(SERVER_PORT),
        reload=True,
    )
