"""FastAPI application for the cluster and mesh orchestrator."""

from fastapi import FastAPI

from mesh_orchestrator.routers import runs

app = FastAPI(
    title="Mesh Orchestrator API",
    description="Multi-cloud Kubernetes cluster provisioning and service mesh federation",
    version="1.0.0",
)

app.include_router(runs.router)


@app.get("/health")
async def health_check() -> dict:
    """Health check."""
    return {"status": "healthy"}


def main() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
