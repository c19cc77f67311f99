#!/usr/bin/env python3
"""
Read-only Status API for the TAM Coordinator

This module provides a FastAPI-based REST API exposing the TAM snapshots
the scheduler publishes after every cycle. Nothing here touches a live TAM
record, and there are no mutating endpoints.

Endpoints:
    GET  /api/health           - API and coordinator health
    GET  /api/status           - Coordinator status and statistics
    GET  /api/tams             - List all TAMs
    GET  /api/tams/{tam_id}    - Get one TAM by id or 16-digit hex address

Usage:
    from tam_coordinator import Coordinator, CoordinatorConfig
    from tam_coordinator.api import create_api

    coordinator = Coordinator(CoordinatorConfig.from_yaml("config.yaml"))
    app = create_api(coordinator)
"""

import logging
from datetime import datetime
from typing import List, Optional

try:
    from fastapi import FastAPI, HTTPException, Query
    from fastapi.middleware.cors import CORSMiddleware
    from pydantic import BaseModel, Field
except ImportError:
    raise ImportError(
        "FastAPI and Pydantic are required for the API module.\n"
        "Install with: pip3 install fastapi uvicorn pydantic"
    )

from . import __version__
from .models import CoordinatorState, TamSnapshot


# =============================================================================
# Constants (NASA Rule 2: Fixed bounds)
# =============================================================================

# Maximum items to return in list endpoints
MAX_LIST_ITEMS = 256


# =============================================================================
# Pydantic Models for API Responses
# =============================================================================

class TamResponse(BaseModel):
    """State of one TAM."""
    id: str = Field(..., description="Symbolic id (TAMxx) or address placeholder")
    address: str = Field(..., description="64-bit address as 16 hex digits")
    first_seen: int = Field(..., ge=0, description="First seen (ms, coordinator clock)")
    last_seen: int = Field(..., ge=0, description="Last seen (ms, coordinator clock)")
    stale: bool = Field(..., description="Whether the TAM has been silent too long")
    led_color: str = Field(..., description="Confirmed LED color as RRGGBB hex")
    led_color_last_updated: int = Field(..., ge=0, description="Last LED change (ms), 0 if never")
    robot_present: bool = Field(..., description="Whether a robot is in the TAM")
    robot_present_last_updated: int = Field(..., ge=0, description="Last presence change (ms)")
    robot_data: int = Field(..., ge=0, le=255, description="Last byte received from the robot")
    robot_data_last_updated: int = Field(..., ge=0, description="Last robot data change (ms)")
    voltage: float = Field(..., ge=0, description="Voltage in volts")
    set_leds_pending: bool = Field(..., description="SET_LEDS command in flight")
    write_robot_pending: bool = Field(..., description="WRITE_ROBOT command in flight")
    controller: Optional[str] = Field(None, description="Controller class name")
    decode_errors: int = Field(..., ge=0, description="Malformed payloads received")
    mismatch_count: int = Field(..., ge=0, description="Payloads of unexpected length")
    failed_commands: int = Field(..., ge=0, description="Commands that exhausted their retries")


class TamListResponse(BaseModel):
    """List of TAMs with summary."""
    total: int = Field(..., ge=0, description="Total number of TAMs")
    stale: int = Field(..., ge=0, description="Number of stale TAMs")
    tams: List[TamResponse] = Field(..., description="List of TAMs")


class CoordinatorStatusResponse(BaseModel):
    """Coordinator status."""
    state: str = Field(..., description="Coordinator state")
    serial_port: str = Field(..., description="Serial device of the local radio")
    experiment: Optional[str] = Field(None, description="Experiment class name")
    uptime_s: float = Field(..., ge=0, description="Seconds since start")
    total_tams: int = Field(..., ge=0, description="Tracked TAMs")
    stale_tams: int = Field(..., ge=0, description="Stale TAMs at the last audit")
    controllers: int = Field(..., ge=0, description="TAMs with a controller")
    frames_sent: int = Field(..., ge=0, description="Frames written to the radio")
    frames_received: int = Field(..., ge=0, description="Frames decoded from the radio")
    decode_errors: int = Field(..., ge=0, description="Malformed payloads")
    retries: int = Field(..., ge=0, description="Command retries")
    failed_commands: int = Field(..., ge=0, description="Commands dropped after retries")
    controller_errors: int = Field(..., ge=0, description="Exceptions raised by controllers")


class HealthResponse(BaseModel):
    """API health check response."""
    status: str = Field(..., description="Health status")
    timestamp: str = Field(..., description="Current server time")
    coordinator_running: bool = Field(..., description="Whether the coordinator is running")


# =============================================================================
# API Factory
# =============================================================================

def create_api(coordinator) -> FastAPI:
    """
    Create a FastAPI application with coordinator reference.

    Args:
        coordinator: Coordinator instance.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="TAM Coordinator API",
        description="Read-only REST API for monitoring the TAMs of an experiment",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    app.state.coordinator = coordinator
    logger = logging.getLogger("API")

    # -------------------------------------------------------------------------
    # Helper Functions
    # -------------------------------------------------------------------------

    def get_coordinator():
        """Get coordinator from app state."""
        return app.state.coordinator

    def is_stale(tam: TamSnapshot) -> bool:
        current = get_coordinator()
        now = current.clock.now_ms()
        return now - tam.last_seen > current.config.stale_after_s * 1000

    def tam_to_response(tam: TamSnapshot) -> TamResponse:
        """Convert TamSnapshot to API response."""
        return TamResponse(
            id=tam.id,
            address=tam.address_hex,
            first_seen=tam.first_seen,
            last_seen=tam.last_seen,
            stale=is_stale(tam),
            led_color=f"{tam.led_color:06X}",
            led_color_last_updated=tam.led_color_last_updated,
            robot_present=tam.robot_present,
            robot_present_last_updated=tam.robot_present_last_updated,
            robot_data=tam.robot_data,
            robot_data_last_updated=tam.robot_data_last_updated,
            voltage=tam.voltage,
            set_leds_pending=tam.set_leds_pending,
            write_robot_pending=tam.write_robot_pending,
            controller=tam.controller,
            decode_errors=tam.decode_errors,
            mismatch_count=tam.mismatch_count,
            failed_commands=tam.failed_commands,
        )

    # -------------------------------------------------------------------------
    # Health Endpoint
    # -------------------------------------------------------------------------

    @app.get("/api/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Check API and coordinator health."""
        return HealthResponse(
            status="healthy",
            timestamp=datetime.now().isoformat(),
            coordinator_running=get_coordinator().state == CoordinatorState.RUNNING,
        )

    # -------------------------------------------------------------------------
    # Coordinator Status Endpoint
    # -------------------------------------------------------------------------

    @app.get("/api/status", response_model=CoordinatorStatusResponse, tags=["Coordinator"])
    async def get_status():
        """Get coordinator status and statistics."""
        current = get_coordinator()
        stats = current.get_stats()
        experiment = current.experiment

        return CoordinatorStatusResponse(
            state=stats["state"],
            serial_port=stats["serial_port"],
            experiment=type(experiment).__name__ if experiment is not None else None,
            uptime_s=stats["uptime_s"],
            total_tams=stats["total_tams"],
            stale_tams=stats["stale_tams"],
            controllers=stats["controllers"],
            frames_sent=stats["frames_sent"],
            frames_received=stats["frames_received"],
            decode_errors=stats["decode_errors"],
            retries=stats["retries"],
            failed_commands=stats["failed_commands"],
            controller_errors=stats["controller_errors"],
        )

    # -------------------------------------------------------------------------
    # TAM Endpoints
    # -------------------------------------------------------------------------

    @app.get("/api/tams", response_model=TamListResponse, tags=["TAMs"])
    async def list_tams(
        stale_only: bool = Query(False, description="Only return stale TAMs"),
        limit: int = Query(MAX_LIST_ITEMS, ge=1, le=MAX_LIST_ITEMS, description="Max TAMs to return"),
        offset: int = Query(0, ge=0, description="Offset for pagination"),
    ):
        """
        List all tracked TAMs, ordered by id.
        """
        tams = sorted(get_coordinator().get_tams(), key=lambda t: t.id)
        stale_count = sum(1 for t in tams if is_stale(t))

        if stale_only:
            tams = [t for t in tams if is_stale(t)]

        # Apply pagination (NASA Rule 2: bounded results)
        total = len(tams)
        tams = tams[offset : offset + limit]

        return TamListResponse(
            total=total,
            stale=stale_count,
            tams=[tam_to_response(t) for t in tams],
        )

    @app.get("/api/tams/{tam_id}", response_model=TamResponse, tags=["TAMs"])
    async def get_tam(tam_id: str):
        """
        Get the state of one TAM.

        Args:
            tam_id: TAM id (e.g., TAM07) or 16-digit hex address
        """
        tam = get_coordinator().get_tam(tam_id)

        if not tam:
            logger.debug(f"Unknown TAM requested: {tam_id}")
            raise HTTPException(status_code=404, detail=f"TAM {tam_id} not found")

        return tam_to_response(tam)

    return app
