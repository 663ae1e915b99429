import argparse
import asyncio
import logging
import os
import sys

import uvicorn

import near_workload.constants as C
from near_workload.config import cfg
from near_workload.constants import ResponseCheckSeverity, SelectionPolicy, TxExecutionStatus
from near_workload.errors import WorkloadError
from near_workload.logging_config import setup_logging
from near_workload.rpc import RpcClient
from near_workload.workload import Workload

log = logging.getLogger("near_workload.cli")


def _wait_until(v: str) -> TxExecutionStatus:
    return TxExecutionStatus(v.upper())


def _pipeline_args(p: argparse.ArgumentParser, severity: ResponseCheckSeverity | None = None) -> None:
    p.add_argument("--channel-buffer-size", type=int, help="upper bound on outstanding requests")
    p.add_argument("--interval-duration-micros", type=int, help="one transaction per interval")
    p.add_argument("--wait-until", type=_wait_until, choices=list(TxExecutionStatus))
    p.add_argument("--severity", type=ResponseCheckSeverity, choices=list(ResponseCheckSeverity), default=severity)
    p.add_argument("--request-timeout", type=float, help="seconds; 0 disables")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="near-workload", description="Load generator for NEAR RPC nodes")
    parser.add_argument("--rpc-url", default=cfg["rpc"]["url"])
    parser.add_argument("--log-level")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-sub-accounts", help="create sub accounts of a signer and write their keys")
    p.add_argument("--signer-key-path", required=True)
    p.add_argument("--nonce", type=int, help="first nonce to use; queried when omitted")
    p.add_argument("--sub-account-prefix")
    p.add_argument("--num-sub-accounts", type=int, required=True)
    p.add_argument("--deposit", type=int, required=True, help="yoctoNEAR per sub account")
    p.add_argument("--user-data-dir", default=cfg["accounts"]["user_data_dir"])
    _pipeline_args(p, ResponseCheckSeverity.ASSERT)

    p = sub.add_parser("benchmark-native-transfers", help="send transfers between stored accounts")
    p.add_argument("--user-data-dir", default=cfg["accounts"]["user_data_dir"])
    p.add_argument("--num-transfers", type=int, required=True)
    p.add_argument("--amount", type=int)
    p.add_argument("--selection", type=SelectionPolicy, choices=list(SelectionPolicy))
    p.add_argument("--seed", type=int)
    _pipeline_args(p)

    p = sub.add_parser("benchmark-function-calls", help="call a contract method from stored accounts")
    p.add_argument("--user-data-dir", default=cfg["accounts"]["user_data_dir"])
    p.add_argument("--receiver-id", required=True)
    p.add_argument("--method-name", required=True)
    p.add_argument("--args", default="{}", help="JSON object")
    p.add_argument("--gas", type=int, default=C.DEFAULT_GAS)
    p.add_argument("--deposit", type=int, default=0)
    p.add_argument("--num-calls", type=int, required=True)
    _pipeline_args(p)

    p = sub.add_parser("create-contract", help="create a sub account and deploy wasm to it")
    p.add_argument("--signer-key-path", required=True)
    p.add_argument("--nonce", type=int)
    p.add_argument("--new-account-id", required=True)
    p.add_argument("--deposit", type=int, required=True)
    p.add_argument("--wasm-path", required=True)
    p.add_argument("--user-data-dir", default=cfg["accounts"]["user_data_dir"])
    p.add_argument("--wait-until", type=_wait_until, choices=list(TxExecutionStatus), default=C.DEFAULT_WAIT_UNTIL)

    p = sub.add_parser("call-contract", help="send a single function call")
    p.add_argument("--signer-key-path", required=True)
    p.add_argument("--nonce", type=int)
    p.add_argument("--receiver-id", required=True)
    p.add_argument("--method-name", required=True)
    p.add_argument("--args", default="{}", help="JSON object")
    p.add_argument("--gas", type=int, default=C.DEFAULT_GAS)
    p.add_argument("--deposit", type=int, default=0)
    p.add_argument("--wait-until", type=_wait_until, choices=list(TxExecutionStatus), default=C.DEFAULT_WAIT_UNTIL)

    p = sub.add_parser("serve", help="run the HTTP service")
    p.add_argument("--host", default=cfg["service"].get("host", "0.0.0.0"))
    p.add_argument("--port", type=int, default=cfg["service"].get("port", 8000))

    return parser


def _pipeline_opts(args: argparse.Namespace) -> dict:
    return {
        "channel_buffer_size": args.channel_buffer_size,
        "interval_micros": args.interval_duration_micros,
        "wait_until": args.wait_until,
        "severity": args.severity,
    }


async def run_command(args: argparse.Namespace) -> None:
    cfg["rpc"]["url"] = args.rpc_url
    if getattr(args, "request_timeout", None) is not None:
        cfg["benchmark"]["request_timeout"] = args.request_timeout
    async with RpcClient(args.rpc_url, timeout=cfg["rpc"].get("timeout", C.RPC_TIMEOUT)) as client:
        wl = Workload(cfg, client)
        match args.command:
            case "create-sub-accounts":
                report = await wl.create_sub_accounts(
                    args.signer_key_path, args.num_sub_accounts, args.deposit, args.user_data_dir,
                    nonce=args.nonce, sub_account_prefix=args.sub_account_prefix,
                    channel_buffer_size=args.channel_buffer_size,
                    interval_micros=args.interval_duration_micros,
                    wait_until=args.wait_until, severity=args.severity,
                )
                log.info("Result: %s", report.as_dict())
            case "benchmark-native-transfers":
                report = await wl.benchmark_native_transfers(
                    args.user_data_dir, args.num_transfers, amount=args.amount,
                    selection=args.selection, seed=args.seed, **_pipeline_opts(args),
                )
                log.info("Result: %s", report.as_dict())
            case "benchmark-function-calls":
                report = await wl.benchmark_function_calls(
                    args.user_data_dir, args.receiver_id, args.method_name, args.args, args.num_calls,
                    gas=args.gas, deposit=args.deposit, **_pipeline_opts(args),
                )
                log.info("Result: %s", report.as_dict())
            case "create-contract":
                contract = await wl.create_contract(
                    args.signer_key_path, args.new_account_id, args.deposit, args.user_data_dir,
                    args.wasm_path, nonce=args.nonce, wait_until=args.wait_until,
                )
                log.info("Created contract account %s", contract.id)
            case "call-contract":
                response = await wl.call_contract(
                    args.signer_key_path, args.receiver_id, args.method_name, args.args,
                    gas=args.gas, deposit=args.deposit, nonce=args.nonce, wait_until=args.wait_until,
                )
                log.info("Result: %s %s", response.status, response.status_detail)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        # read again when uvicorn imports the app module
        cfg["rpc"]["url"] = args.rpc_url
        if args.log_level:
            os.environ["LOG_LEVEL"] = args.log_level
        uvicorn.run("near_workload.app:app", host=args.host, port=args.port, lifespan="on")
        return 0

    try:
        asyncio.run(run_command(args))
    except WorkloadError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
