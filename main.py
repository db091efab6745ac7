"""
FastAPI server for the bus tracking simulation
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from broadcast_hub import BroadcastHub
from config import Settings
from exceptions import StoreUnavailable
from models import VehicleUpdate
from query_service import QueryService
from route_catalog import RouteCatalog
from route_provider import OpenRouteServiceProvider, RouteProvider
from simulation_engine import SimulationEngine
from vehicle_store import InMemoryVehicleStore, SqlVehicleStore, VehicleStateStore

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[VehicleStateStore] = None,
    provider: Optional[RouteProvider] = None,
    catalog: Optional[RouteCatalog] = None,
) -> FastAPI:
    """
    Create the FastAPI application

    Collaborators that are not passed in are built from the settings
    when the application starts.

    Args:
        settings: Runtime settings, read from the environment if omitted
        store: Vehicle state store
        provider: Route geometry provider
        catalog: Route catalog, the base two-route catalog if omitted

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned_store = owned_provider = None
        route_provider = provider
        if route_provider is None:
            # Missing credentials are the one fatal configuration error
            settings.validate_for_startup()
            route_provider = owned_provider = OpenRouteServiceProvider(
                settings.ors_api_key,
                base_url=settings.ors_base_url,
                profile=settings.ors_profile,
                timeout=settings.route_fetch_timeout,
            )

        vehicle_store = store
        if vehicle_store is None:
            if settings.database_url:
                vehicle_store = owned_store = SqlVehicleStore(settings.database_url)
                await owned_store.create_schema()
            else:
                logger.warning("BUS_DATABASE_URL not set, using an empty in-memory store")
                vehicle_store = InMemoryVehicleStore()

        query_service = QueryService(vehicle_store)
        hub = BroadcastHub(query_service.active_vehicles, max_queue=settings.broadcast_queue_size)
        engine = SimulationEngine(
            vehicle_store,
            catalog or RouteCatalog.default(),
            route_provider,
            hub,
            tick_period=settings.tick_period,
            backoff_base=settings.fetch_backoff_base,
            backoff_max=settings.fetch_backoff_max,
            fetch_timeout=settings.route_fetch_timeout * 2,
        )

        app.state.store = vehicle_store
        app.state.query_service = query_service
        app.state.hub = hub
        app.state.engine = engine

        engine.start()
        logger.info(f"Bus tracking server ready (tick every {settings.tick_period}s)")
        try:
            yield
        finally:
            await engine.stop()
            hub.close()
            if owned_provider is not None:
                await owned_provider.aclose()
            if owned_store is not None:
                await owned_store.dispose()
            logger.info("Bus tracking server stopped")

    app = FastAPI(
        title="Bus Tracking Simulation Server",
        description="Simulates buses moving along fixed routes and pushes live positions",
        version="1.0.0",
        lifespan=lifespan,
    )

    if settings.cors_allow_all:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Bus Tracking Simulation Server",
            "version": "1.0.0",
            "docs": "/docs"
        }

    @app.get("/api/buses", response_model=list[VehicleUpdate])
    async def get_active_buses(request: Request):
        """
        Current snapshot of all active buses

        Returns:
            List of vehicle records
        """
        try:
            return await request.app.state.query_service.active_vehicles()
        except StoreUnavailable as exc:
            logger.error(f"Error fetching buses: {exc}")
            raise HTTPException(status_code=503, detail="Vehicle store unavailable")

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        engine: SimulationEngine = request.app.state.engine
        return {
            "status": "healthy" if engine.running else "degraded",
            "simulation_running": engine.running,
            "ticks_completed": engine.ticks_completed,
            "ticks_skipped": engine.ticks_skipped,
            "tracked_vehicles": engine.tracked_vehicles,
            "observers": request.app.state.hub.observer_count,
        }

    @app.websocket("/ws")
    async def vehicle_updates(websocket: WebSocket):
        """
        Real-time channel: one snapshot message, then one message per bus update
        """
        hub: BroadcastHub = websocket.app.state.hub
        await websocket.accept()
        subscription = await hub.connect()

        async def forward():
            async for message in subscription:
                await websocket.send_json(message.model_dump(mode="json"))

        async def watch_disconnect():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return

        sender = asyncio.create_task(forward())
        watcher = asyncio.create_task(watch_disconnect())
        try:
            done, _ = await asyncio.wait({sender, watcher}, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                with contextlib.suppress(WebSocketDisconnect, RuntimeError):
                    task.result()
        finally:
            for task in (sender, watcher):
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                    await task
            hub.disconnect(subscription)

        # The hub dropped this observer (shutdown or slow consumer)
        if sender in done:
            with contextlib.suppress(RuntimeError, WebSocketDisconnect):
                await websocket.close()

    return app


settings = Settings()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
