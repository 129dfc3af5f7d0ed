from dataclasses import asdict

from fastapi import BackgroundTasks, FastAPI, HTTPException
from pydantic import BaseModel

from mcdrop.config import Settings, load_settings
from mcdrop.control.lifecycle import LifecycleController
from mcdrop.control.ssh import TransportError
from mcdrop.control.state import LifecycleState
from mcdrop.providers.base import ProviderError


class ForceStatusRequest(BaseModel):
    state: LifecycleState


class InstanceIdRequest(BaseModel):
    instance_id: int | str | None = None


class ConsoleRequest(BaseModel):
    command: str


def create_app(settings: Settings | None = None,
               controller: LifecycleController | None = None) -> FastAPI:
    app = FastAPI(title="mcdrop API", version="0.1.0")
    if controller is None:
        controller = LifecycleController.from_settings(settings or load_settings())
    app.state.controller = controller

    @app.get("/status")
    def status():
        return controller.get_status().to_dict()

    @app.post("/start", status_code=202)
    def start():
        try:
            pending = controller.start()
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))
        snapshot = controller.get_status()
        if pending is None:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot start server when status is '{snapshot.state.value}'",
            )
        return snapshot.to_dict()

    @app.post("/stop", status_code=202)
    def stop():
        pending = controller.stop()
        snapshot = controller.get_status()
        if pending is None:
            raise HTTPException(
                status_code=409,
                detail=f"Cannot stop server when status is '{snapshot.state.value}'",
            )
        return snapshot.to_dict()

    @app.post("/force-status")
    def force_status(req: ForceStatusRequest):
        return controller.force_status(req.state).to_dict()

    @app.put("/instance-id")
    def set_instance_id(req: InstanceIdRequest):
        return controller.set_instance_id(req.instance_id).to_dict()

    @app.post("/console")
    def console(req: ConsoleRequest):
        try:
            output = controller.send_console_command(req.command)
        except TransportError as e:
            raise HTTPException(status_code=502, detail=str(e))
        if output is None:
            state = controller.get_status().state.value
            raise HTTPException(
                status_code=409,
                detail=f"Server console is not reachable when status is '{state}'",
            )
        return {"output": output}

    @app.post("/init", status_code=202)
    def run_initialization(background_tasks: BackgroundTasks):
        snapshot = controller.get_status()
        if snapshot.state in (LifecycleState.STARTING, LifecycleState.STOPPING):
            raise HTTPException(
                status_code=409,
                detail=f"Cannot initialize server when status is '{snapshot.state.value}'",
            )
        if not snapshot.address:
            raise HTTPException(status_code=409, detail="No instance address known")
        background_tasks.add_task(controller.run_initialization)
        return snapshot.to_dict()

    @app.get("/balance")
    def balance():
        try:
            return asdict(controller.get_balance())
        except ProviderError as e:
            raise HTTPException(status_code=502, detail=str(e))

    return app
