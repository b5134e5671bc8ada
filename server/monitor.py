"""
Compute Party Monitor
=====================
Read-only FastAPI view of a running ComputeServer: status, session
records, registered variants and the audit trail. Nothing here touches
ciphertexts or key material.
"""

from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse
import uvicorn

from finance_core.variants import list_variants

from .compute_server import ComputeServer


def create_monitor_app(compute_server: ComputeServer) -> FastAPI:
    app = FastAPI(
        title="Confidential Budget Exchange",
        description="Compute party monitor for encrypted budget sessions",
        version="1.0.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.get("/", response_class=HTMLResponse)
    async def root():
        """Plain status page"""
        status = compute_server.get_status()
        rows = "".join(
            f"<tr><td>{r['session_id']}</td><td>{r['variant']}</td>"
            f"<td>{r['status']}</td><td>{r['error_kind'] or ''}</td></tr>"
            for r in compute_server.get_sessions(limit=20)
        )
        return HTMLResponse(
            "<h1>Confidential Budget Exchange</h1>"
            f"<p>Compute party at {status['address']} ({status['status']}), "
            f"{status['sessions_completed']} completed, "
            f"{status['sessions_failed']} failed</p>"
            "<table><tr><th>Session</th><th>Variant</th><th>Status</th><th>Error</th></tr>"
            f"{rows}</table>"
        )

    @app.get("/status")
    async def get_status():
        """Server status"""
        return compute_server.get_status()

    @app.get("/api/sessions")
    async def get_sessions(limit: int = 50):
        """Active and recent sessions"""
        if limit < 1:
            raise HTTPException(status_code=400, detail="limit must be positive")
        return compute_server.get_sessions(limit)

    @app.get("/api/variants")
    async def get_variants():
        """Registered pipeline variants"""
        return list_variants(compute_server.registry)

    @app.get("/api/audit")
    async def get_audit(session_id: Optional[str] = None, limit: int = 100):
        """Audit report, or one session's entries"""
        audit = compute_server.audit
        if session_id is None:
            report = audit.generate_audit_report()
            report['recent_entries'] = [e.to_dict() for e in audit.get_all_entries()[-limit:]]
            return report
        entries = audit.get_entries_for_session(session_id)
        if not entries:
            raise HTTPException(status_code=404, detail=f"Unknown session: {session_id}")
        return [e.to_dict() for e in entries[-limit:]]

    return app


def build_monitor_server(compute_server: ComputeServer, host: str = "127.0.0.1",
                         port: int = 8000) -> uvicorn.Server:
    """uvicorn server sharing the compute party's event loop"""
    app = create_monitor_app(compute_server)
    return uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
