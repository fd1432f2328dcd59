from __future__ import annotations

import logging
from typing import Any

from web3 import Web3

logger = logging.getLogger(__name__)


def disable_poa_extra_data_validation() -> None:
    try:
        import web3._utils.method_formatters as mf

        if hasattr(mf, "BLOCK_FORMATTERS") and "extraData" in mf.BLOCK_FORMATTERS:

            def _keep_extra_data(value: Any) -> Any:
                return value

            mf.BLOCK_FORMATTERS["extraData"] = _keep_extra_data
    except Exception:
        return


def apply_poa_middleware(w3: Web3) -> None:
    """
    Inject PoA middleware for chains like Polygon / BNB Chain.

    web3.py v6: geth_poa_middleware
    web3.py v7+: ExtraDataToPOAMiddleware
    """
    try:
        from web3.middleware import geth_poa_middleware  # type: ignore[attr-defined]

        w3.middleware_onion.inject(geth_poa_middleware, layer=0)
        return
    except ImportError:
        pass

    try:
        from web3.middleware import ExtraDataToPOAMiddleware  # type: ignore[attr-defined]

        w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)
        return
    except ImportError:
        pass

    logger.warning("No PoA middleware available in this web3 version; block formatting may fail")


def make_web3(rpc_url: str, request_timeout_sec: float) -> Web3:
    """
    HTTP Web3 client whose transport timeout matches the oracle timeout,
    so a hung endpoint also releases the executor thread.
    """
    disable_poa_extra_data_validation()
    w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout_sec}))
    apply_poa_middleware(w3)
    return w3
