"""
NetworkPolicy Approval Webhook
Wires the approval gate, the controller and the FastAPI surface together
from GateConfig.

Usage:
    python main.py                                  (in cluster)
    NETPOL_APPROVAL_KUBE_API_URL=http://127.0.0.1:8001 python main.py
                                                    (through kubectl proxy)
    uvicorn main:build_app --factory --port 9443
"""

from __future__ import annotations

import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI

from kube_sdk.client import KubeClient, KubeResourceStore
from netpol_approval.admission import AdmissionGate
from netpol_approval.audit import AuditSpineManager
from netpol_approval.collector import OrphanCollector
from netpol_approval.config import GateConfig, configure_logging
from netpol_approval.controller import ApprovalController
from netpol_approval.materializer import GrantMaterializer
from netpol_approval.webhook import create_app

logger = logging.getLogger("netpol_approval.main")


def build_store(config: GateConfig) -> KubeResourceStore:
    if config.kube_api_url:
        client = KubeClient(config.kube_api_url, timeout=config.store_timeout_seconds)
    else:
        client = KubeClient.in_cluster(timeout=config.store_timeout_seconds)
    logger.info("using Kubernetes API at %s", client.base_url)
    return KubeResourceStore(client)


def build_app(config: Optional[GateConfig] = None) -> FastAPI:
    if config is None:
        config = GateConfig.from_env()
        configure_logging(config.log_level)

    store = build_store(config)

    audit = None
    if config.audit_dsn:
        audit = AuditSpineManager(config.audit_dsn)
        audit.init_schema()
        logger.info("audit spine enabled")

    gate = AdmissionGate(store, config, audit=audit)
    materializer = GrantMaterializer(store, config, audit=audit)
    collector = OrphanCollector(store, audit=audit)
    controller = ApprovalController(store, config, materializer, collector)
    return create_app(gate, controller=controller, collector=collector, audit=audit)


def main() -> None:
    config = GateConfig.from_env()
    configure_logging(config.log_level)
    app = build_app(config)

    tls = {}
    if config.tls_cert_file and config.tls_key_file:
        tls = {"ssl_certfile": config.tls_cert_file, "ssl_keyfile": config.tls_key_file}
    else:
        logger.warning("no TLS certificate configured, serving plain HTTP")

    uvicorn.run(
        app,
        host=config.listen_host,
        port=config.listen_port,
        log_level=config.log_level.lower(),
        **tls,
    )


if __name__ == "__main__":
    main()
