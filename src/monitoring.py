import logging
from fastapi import FastAPI
from prometheus_client import Counter
from prometheus_fastapi_instrumentator import Instrumentator

from helper import KNOWN_NETWORKS
from schemas import SettleResponse, VerifyResponse

logger = logging.getLogger(__name__)

VERIFY_TOTAL = Counter(
    "x402_verify_total",
    "Verify outcomes by network and result",
    ["network", "result"],
)
SETTLE_TOTAL = Counter(
    "x402_settle_total",
    "Settle outcomes by network and result",
    ["network", "result"],
)
LEDGER_SUBMISSIONS_TOTAL = Counter(
    "x402_ledger_submissions_total",
    "Transactions handed to the ledger by network and outcome",
    ["network", "outcome"],
)


def _network_label(network: str) -> str:
    # client supplied; keep label cardinality bounded
    return network if network in KNOWN_NETWORKS else "other"


def record_verify(network: str, response: VerifyResponse) -> None:
    result = "valid" if response.isValid else response.invalidReason.value
    VERIFY_TOTAL.labels(network=_network_label(network), result=result).inc()


def record_settle(network: str, response: SettleResponse) -> None:
    result = "success" if response.success else response.errorReason.value
    SETTLE_TOTAL.labels(network=_network_label(network), result=result).inc()


def record_submission(network: str, outcome: str) -> None:
    LEDGER_SUBMISSIONS_TOTAL.labels(network=_network_label(network), outcome=outcome).inc()


def attach_prometheus_middleware(main_app: FastAPI) -> Instrumentator:
    """
    Attach Prometheus instrumentation middleware to the main app.
    Must be called before app startup.
    """
    return Instrumentator().instrument(main_app)


def start_monitoring_server(instrumentator: Instrumentator, main_app: FastAPI, config):
    """
    Configure metrics exposure.
    If ports match, expose on main app.
    If ports differ, start a separate uvicorn server in a thread.
    Should be called after config is loaded (e.g. in lifespan).
    """
    try:
        if config.monitoring_port == config.server_port:
            instrumentator.expose(main_app, endpoint=config.monitoring_endpoint)
            logger.info(f"Prometheus monitoring enabled on main port at {config.monitoring_endpoint}")
            return

        metrics_app = FastAPI(title="X402 Stellar Facilitator Metrics")
        instrumentator.expose(metrics_app, endpoint=config.monitoring_endpoint)

        import threading
        import uvicorn

        def run_metrics():
            try:
                logger.info(f"Starting uvicorn for metrics on {config.server_host}:{config.monitoring_port}...")
                metrics_config = uvicorn.Config(
                    metrics_app,
                    host=config.server_host,
                    port=config.monitoring_port,
                    log_level="error",
                )
                server = uvicorn.Server(metrics_config)
                server.run()
            except Exception as e:
                logger.error(f"Metrics server thread crashed: {e}", exc_info=True)

        t = threading.Thread(target=run_metrics, daemon=True)
        t.start()
        logger.info(f"Prometheus monitoring server started on separate port {config.monitoring_port} at {config.monitoring_endpoint}")

    except Exception as e:
        logger.error(f"Failed to initialize monitoring server: {e}")
