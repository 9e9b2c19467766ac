from fastapi import FastAPI

from stack_engine.api.routes.certificates import router as certificates_router
from stack_engine.api.routes.deployments import router as deployments_router
from stack_engine.api.routes.services import router as services_router

app = FastAPI(title="Stack Engine API")


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(deployments_router)
app.include_router(services_router)
app.include_router(certificates_router)
