import asyncio
import logging
from pathlib import Path

from relay.entry.config import GatewayConfig, build_arg_parser, load_config
from relay.infra import log_rotate
from relay.infra.gateway import Gateway
from relay.infra.logfmt import kv
from relay.infra.script_executor import SubprocessScriptExecutor
from relay.service.dispatch_service import DispatchService


LOG_NAME = "gateway.log"


def setup_logging(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_rotate.rotate_logs(
        log_dir,
        LOG_NAME,
        max_lines=5000,
        max_backups=3,
        archive_name_prefix="gateway_log_archive",
        compression_level=4,
    )
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.FileHandler(log_dir / LOG_NAME, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    logging.getLogger("websockets").setLevel(logging.WARNING)
    # httpx INFO logs include full request URLs, which may carry credentials.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("relay_gateway")


def build_gateway(cfg: GatewayConfig, logger: logging.Logger) -> tuple[Gateway, DispatchService]:
    gateway = Gateway(
        cfg.server,
        cfg.user,
        cfg.dev,
        cfg.proxy,
        scheme=cfg.scheme,
        logger=logger.getChild("gateway"),
    )
    dispatch = DispatchService(
        gateway,
        script_executor=SubprocessScriptExecutor(cfg.script_cmd, logger=logger.getChild("script")),
        max_pending=cfg.max_pending,
        logger=logger.getChild("dispatch"),
    )
    gateway.on_message = dispatch.handle_frame
    return gateway, dispatch


async def run(cfg: GatewayConfig, logger: logging.Logger) -> None:
    gateway, dispatch = build_gateway(cfg, logger)
    try:
        await gateway.run_forever()
    finally:
        await dispatch.cancel_all()
        await gateway.close()


def main() -> int:
    args = build_arg_parser().parse_args()
    cfg = load_config(args)
    logger = setup_logging(cfg.log_dir)
    logger.info(kv(op="gateway.start", server=cfg.server, user=cfg.user, dev=cfg.dev, scheme=cfg.scheme, proxy=cfg.proxy, max_pending=cfg.max_pending))
    try:
        asyncio.run(run(cfg, logger))
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
