"""Entry point for running the reporting app."""
import uvicorn

if __name__ == "__main__":
    from reporting.app import app
    uvicorn.run(app, host="0.0.0.0", port=8001)
