import uvicorn

from compare_backend.config import HOST, PORT, VIDEO_CACHE_DIR, UPLOAD_DIR

if __name__ == "__main__":
    uvicorn.run(
        "compare_backend.main:app",
        host=HOST,
        port=PORT,
        reload=True,
        # Keep downloads and uploads out of the reload watcher
        reload_excludes=[f"{VIDEO_CACHE_DIR}/*", f"{UPLOAD_DIR}/*"],
    )
