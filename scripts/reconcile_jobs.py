#!/usr/bin/env python3
"""
Run the audit and PDF reconciliation passes once, outside Celery Beat.

Usage:
    python scripts/reconcile_jobs.py [--audits-only | --pdf-only] [--limit N]

Useful after a worker outage: stale running audits get one poll step each,
stale PDF jobs are re-dispatched or failed as abandoned.
"""

import argparse
import asyncio

from app.features.audit.services.audit_dispatcher import AuditDispatcher
from app.features.audit.services.crawler_gateway import CrawlerGateway
from app.features.pdf.services.pdf_job_manager import PdfJobManager
from app.features.pdf.services.render_worker import RenderWorkerClient
from app.platform.db.session import SessionLocal


async def reconcile(audits: bool, pdf: bool, limit: int):
    async with SessionLocal() as db:
        if audits:
            job_ids = await AuditDispatcher(db, CrawlerGateway()).reconcile_running(limit=limit)
            print(f"Audits reconciled: {len(job_ids)}")

        if pdf:
            manager = PdfJobManager(db, RenderWorkerClient())
            report = await manager.sweep_stale(limit=limit)
            for job_id in report.redispatch:
                await manager.dispatch(job_id)
            print(f"PDF jobs abandoned: {len(report.abandoned)}")
            print(f"PDF jobs re-dispatched: {len(report.redispatch)}")


def main():
    parser = argparse.ArgumentParser(description="Reconcile audit and PDF jobs once")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--audits-only", action="store_true", help="Skip the PDF sweep")
    group.add_argument("--pdf-only", action="store_true", help="Skip audit reconciliation")
    parser.add_argument("--limit", type=int, default=100, help="Max jobs per pass")
    args = parser.parse_args()

    asyncio.run(reconcile(audits=not args.pdf_only, pdf=not args.audits_only, limit=args.limit))


if __name__ == "__main__":
    main()
