# FastAPI Web Server for the Drone Fleet Simulation Engine
# File: api_server.py

"""
Run with: uvicorn api_server:app --reload --port 8000

Every response is an envelope: {"data": ...} on success,
{"data": null, "error": {"code", "message", "details?"}} otherwise.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Optional
import logging

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from config import EngineConfig
from main import FleetOrchestrator
from models import ErrorCode, MissionStatus, OperationError, OperationResult

logger = logging.getLogger(__name__)

# HTTP status for each error code
ERROR_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.DRONE_NOT_FOUND: 404,
    ErrorCode.VALIDATION_ERROR: 422,
    ErrorCode.NOT_ARMED: 409,
    ErrorCode.INVALID_STATUS: 409,
    ErrorCode.DRONE_BUSY: 409,
    ErrorCode.COMMAND_FAILED: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

TELEMETRY_SCOPES = ('fleet', 'drone', 'map')

# ============================================================================
# LIFECYCLE
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build and start the orchestrator; stop it on shutdown"""
    config = EngineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    orchestrator = FleetOrchestrator(config)
    orchestrator.start()
    orchestrator.metrics.start()
    app.state.orchestrator = orchestrator
    logger.info("✅ Fleet engine initialized")

    yield

    orchestrator.stop()
    logger.info("🛑 Fleet engine stopped")

app = FastAPI(
    title="Drone Fleet Simulation API",
    description="Telemetry, operator commands and mission lifecycle for a simulated drone fleet",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

def get_orchestrator(request: Request) -> FleetOrchestrator:
    return request.app.state.orchestrator

# ============================================================================
# REQUEST MODELS & RESPONSE HELPERS
# ============================================================================

class CommandRequest(BaseModel):
    command: str = Field(..., description="ARM, TAKEOFF, LAND or RTL")

def error_response(error: OperationError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(error.code, 500),
        content={'data': None, 'error': error.to_dict()},
    )

def envelope(result: OperationResult, serialize: Callable[[Any], Any] = lambda d: d,
             status_code: int = 200):
    if not result.success:
        return error_response(result.error)
    return JSONResponse(status_code=status_code, content={'data': serialize(result.data)})

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return error_response(OperationError(
        ErrorCode.VALIDATION_ERROR,
        "Invalid request",
        details=[{'loc': list(e.get('loc', ())), 'msg': e.get('msg')} for e in exc.errors()],
    ))

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}")
    return error_response(OperationError(ErrorCode.INTERNAL_ERROR, str(exc) or "Internal error"))

# ============================================================================
# TELEMETRY
# ============================================================================

@app.get("/api/telemetry")
def get_telemetry(
    drone_id: Optional[str] = Query(None, description="Single drone to advance"),
    scope: Optional[str] = Query(None, description="fleet | drone | map"),
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
):
    """Advance the simulation one step and return telemetry"""
    if scope not in TELEMETRY_SCOPES:
        # Unknown scope falls back to the fleet view
        scope = 'fleet'

    target = drone_id if drone_id and scope != 'map' else None
    telemetry = orchestrator.get_telemetry(target)

    return {
        'data': [t.to_dict() for t in telemetry],
        'meta': {
            'scope': 'drone' if target else scope,
            'count': len(telemetry),
            'timestamp': datetime.now().isoformat(),
        },
    }

# ============================================================================
# DRONES
# ============================================================================

@app.get("/api/drones/missions-status")
def get_missions_status(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return {'data': orchestrator.get_missions_status()}

@app.post("/api/drones/{drone_id}/commands")
def send_command(drone_id: str, request: CommandRequest,
                 orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    """Send an operator command (ARM, TAKEOFF, LAND, RTL)"""
    return envelope(orchestrator.send_command(drone_id, request.command))

@app.get("/api/drones/{drone_id}/state")
def get_drone_state(drone_id: str, orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return envelope(orchestrator.get_drone_state(drone_id))

@app.get("/api/drones/{drone_id}/trail")
def get_flight_trail(drone_id: str, orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return envelope(orchestrator.get_flight_trail(drone_id))

# ============================================================================
# MISSIONS
# ============================================================================

@app.get("/api/missions")
def list_missions(
    status: Optional[MissionStatus] = Query(None, description="Filter by mission status"),
    drone_id: Optional[str] = Query(None, description="Filter by drone"),
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
):
    missions = orchestrator.list_missions(status=status, drone_id=drone_id)
    return {'data': [m.to_dict() for m in missions], 'meta': {'count': len(missions)}}

@app.post("/api/missions")
def create_mission(draft: Dict[str, Any] = Body(...),
                   orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    """
    Create a pending mission

    - **drone_id**: Assigned drone
    - **waypoints**: At least 5 waypoints (alt 5-120 m, speed 1-25 m/s)
    """
    return envelope(orchestrator.create_mission(draft), lambda m: m.to_dict(), status_code=201)

@app.post("/api/missions/{mission_id}/start")
def start_mission(mission_id: str, orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return envelope(orchestrator.start_mission(mission_id), lambda m: m.to_dict())

@app.post("/api/missions/{mission_id}/cancel")
def cancel_mission(mission_id: str, orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return envelope(orchestrator.cancel_mission(mission_id), lambda m: m.to_dict())

@app.get("/api/missions/{mission_id}/events")
def get_mission_events(
    mission_id: str,
    limit: int = Query(5, ge=1, le=50, description="Most recent events to return"),
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
):
    return envelope(orchestrator.get_mission_events(mission_id, limit),
                    lambda events: [e.to_dict() for e in events])

# ============================================================================
# METRICS & HEALTH
# ============================================================================

@app.get("/api/metrics", response_class=PlainTextResponse)
def metrics(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    """Prometheus text exposition"""
    orchestrator.metrics.refresh_fleet_gauges()
    return PlainTextResponse(orchestrator.metrics.export_prometheus(),
                             media_type="text/plain; version=0.0.4")

@app.get("/api/dashboard")
def dashboard(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    """Health, collected metrics, rates and process stats in one payload"""
    return {'data': orchestrator.metrics.get_dashboard_data()}

@app.get("/api/events")
def get_recent_events(
    limit: int = Query(50, ge=1, le=1000, description="Most recent router events to return"),
    orchestrator: FleetOrchestrator = Depends(get_orchestrator),
):
    """Recent lifecycle events from the event router"""
    events = orchestrator.event_router.recent(limit)
    return {
        'data': [
            {
                'id': e.id,
                'type': e.type,
                'priority': e.priority.name,
                'timestamp': e.timestamp.isoformat(),
                'source': e.source,
                'data': e.data,
                'processed': e.processed,
            }
            for e in events
        ],
        'meta': {'count': len(events)},
    }

@app.get("/api/status")
def system_status(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return {'data': orchestrator.get_status()}

@app.get("/")
def root(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    return {
        "name": "Drone Fleet Simulation API",
        "version": "1.0.0",
        "orchestrator": orchestrator.status,
        "docs": "/docs",
        "redoc": "/redoc"
    }

@app.get("/health")
def health_check(orchestrator: FleetOrchestrator = Depends(get_orchestrator)):
    health = orchestrator.metrics.get_health_status()
    return {
        "status": health['overall_status'],
        "orchestrator": orchestrator.status,
        "checks": health['checks'],
        "timestamp": datetime.now().isoformat()
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api_server:app", host="0.0.0.0", port=8000)
