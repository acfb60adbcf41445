"""
swarmcast — LAN peer-to-peer chunked file sharing

Main entry point.  Starts the chunk server and discovery, then runs
either the TUI dashboard, a CLI loop, or nothing at all (headless).

Usage:
    swarmcast                 # start TUI mode (default)
    swarmcast --cli           # start CLI mode
    swarmcast --headless      # serve files only, no interface
    swarmcast --port 6000     # use a fixed chunk-server port
"""

import argparse
import logging
import os
import threading

from .client import fetch_file_list, format_size
from .config import BUFFER_DIR, FILE_SERVER_PORT, PEER_ID, SHARED_DIR
from .logging_config import setup_logging
from .node import Node
from .server import ServerError
from .transfer import TransferError

logger = logging.getLogger(__name__)


def _parse_target(target: str, default_port: int) -> tuple[str, int]:
    """
    Parse a 'host:port' string.  If port is omitted, *default_port* is used.
    """
    if ":" in target:
        host, port_str = target.rsplit(":", 1)
        return host, int(port_str)
    return target, default_port


def _print_help() -> None:
    print("""
  swarmcast — Commands
  ────────────────────────────────────────────────────
  peers                      Show discovered peers on the LAN
  search <text>              Ask the network for matching files
  results                    Show search results so far
  get <n | hash>             Download search result n (or by hash)
  status                     Show active transfers
  list <host[:port]>         List files on a remote peer
  myfiles                    List your own shared files
  help                       Show this help message
  quit / exit                Shut down this peer
  ────────────────────────────────────────────────────
""")


def _print_peers(node: Node) -> None:
    peers = node.peers()
    if not peers:
        print("  No peers discovered yet (waiting for announcements...).")
        return
    print(f"  {'Peer ID':<12} {'Address':>22}")
    print(f"  {'-' * 12} {'-' * 22}")
    for p in peers:
        print(f"  {p.peer_id:<12} {p.address + ':' + str(p.port):>22}")


def _print_results(node: Node) -> None:
    results = node.search_results()
    if not results:
        print("  (no search results)")
        return
    for i, r in enumerate(results, 1):
        print(f"  {i:>3}. {r.name:<40} {format_size(r.size):>12}  peers: {', '.join(r.peer_ids)}")
        print(f"       {r.file_hash}")


def _print_status(node: Node) -> None:
    transfers = node.transfers.transfers()
    if not transfers:
        print("  (no transfers)")
        return
    for t in transfers:
        state = "done" if t.is_complete() else ("cancelled" if t.cancelled.is_set() else "active")
        print(
            f"  {t.name:<40} {t.progress():5.1f}%  "
            f"{t.completed_count()}/{t.total_chunks} chunks  "
            f"playable {format_size(t.playable_bytes())}  [{state}]"
        )


def _print_my_files(node: Node) -> None:
    entries = node.catalog.entries()
    if not entries:
        print(f"  (no shared files in {node.shared_dir})")
        return
    print(f"  {'Filename':<40} {'Size':>12}")
    print(f"  {'-' * 40} {'-' * 12}")
    for e in entries:
        print(f"  {e.name:<40} {format_size(e.size):>12}")


def _resolve_result(node: Node, ref: str) -> str | None:
    results = node.search_results()
    if ref.isdigit():
        n = int(ref)
        return results[n - 1].file_hash if 0 < n <= len(results) else None
    for r in results:
        if r.file_hash.startswith(ref):
            return r.file_hash
    return None


def _list_remote(host: str, port: int) -> None:
    try:
        files = fetch_file_list(host, port)
    except (RuntimeError, OSError) as e:
        print(f"  [!] {e}")
        return
    if not files:
        print("  (no files)")
        return
    for f in files:
        print(f"  {f.name:<40} {format_size(f.size):>12}  {f.file_hash}")


def run_cli(node: Node) -> None:
    print(f"  swarmcast started  [peer_id={node.peer_id}  tcp_port={node.server.port}]")
    print(f"  Shared directory: {node.shared_dir}")
    print(f"  Download directory: {node.buffer_dir}")
    print("  Type 'help' for available commands.\n")

    node.on_new_peer = lambda p: print(f"\n  [+] peer {p.peer_id} at {p.address}:{p.port}")
    node.on_search_result = lambda r: print(
        f"\n  [?] {r.name} ({format_size(r.size)}) from {', '.join(r.peer_ids)}"
    )
    node.on_transfer_complete = lambda name, _h: print(f"\n  [✓] download complete: {name}")

    try:
        while True:
            try:
                raw = input("swarmcast> ").strip()
            except EOFError:
                break

            if not raw:
                continue

            tokens = raw.split(maxsplit=1)
            cmd = tokens[0].lower()
            arg = tokens[1] if len(tokens) > 1 else ""

            # ----------------------------------------------------------
            if cmd in ("quit", "exit"):
                print("  Shutting down...")
                break

            # ----------------------------------------------------------
            elif cmd == "help":
                _print_help()

            # ----------------------------------------------------------
            elif cmd == "peers":
                _print_peers(node)

            # ----------------------------------------------------------
            elif cmd == "search":
                if not arg:
                    print("  Usage: search <text>")
                    continue
                node.search(arg)
                print("  Query sent; hits will appear as they arrive.")

            # ----------------------------------------------------------
            elif cmd == "results":
                _print_results(node)

            # ----------------------------------------------------------
            elif cmd == "get":
                file_hash = _resolve_result(node, arg) if arg else None
                if file_hash is None:
                    print("  Usage: get <result number | hash prefix>")
                    continue
                try:
                    state = node.download(file_hash)
                    print(f"  Downloading {state.name} -> {state.output_path}")
                except TransferError as e:
                    print(f"  [!] Download failed: {e}")

            # ----------------------------------------------------------
            elif cmd == "status":
                _print_status(node)

            # ----------------------------------------------------------
            elif cmd == "list":
                if not arg:
                    print("  Usage: list <host[:port]>")
                    continue
                try:
                    host, port = _parse_target(arg, node.server.port)
                except ValueError:
                    print(f"  [!] Bad target: {arg}")
                    continue
                _list_remote(host, port)

            # ----------------------------------------------------------
            elif cmd == "myfiles":
                _print_my_files(node)

            # ----------------------------------------------------------
            else:
                print(f"  Unknown command: {cmd}  (type 'help' for commands)")

    except KeyboardInterrupt:
        print("\n  Interrupted. Shutting down...")


def run_headless(node: Node) -> None:
    print(f"  swarmcast headless peer  [peer_id={node.peer_id}  tcp_port={node.server.port}]")
    _print_my_files(node)
    print("\n  Press Ctrl+C to stop the peer.")
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        print("\n  Shutting down headless peer...")


def main() -> None:
    parser = argparse.ArgumentParser(description="swarmcast LAN file sharing")
    parser.add_argument(
        "--port", type=int, default=FILE_SERVER_PORT, help="fixed TCP port for the chunk server"
    )
    parser.add_argument("--shared", default=SHARED_DIR, help="directory of files to share")
    parser.add_argument("--buffer", default=BUFFER_DIR, help="directory downloads are written to")
    parser.add_argument("--peer-id", default=PEER_ID, help="identity announced to other peers")
    parser.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--cli", action="store_true", help="Launch CLI mode instead of TUI dashboard"
    )
    mode.add_argument("--headless", action="store_true", help="Serve files without any interface")
    args = parser.parse_args()

    os.makedirs(args.buffer, exist_ok=True)
    if args.cli or args.headless:
        setup_logging(args.log_level)
    else:
        # The dashboard owns the terminal
        setup_logging(args.log_level, logfile=os.path.join(args.buffer, "swarmcast.log"))

    node = Node(
        peer_id=args.peer_id,
        shared_dir=args.shared,
        buffer_dir=args.buffer,
        serving_port=args.port,
    )
    try:
        node.start()
    except (ServerError, OSError) as e:
        logger.error("Could not start peer: %s", e)
        raise SystemExit(1)

    try:
        if args.headless:
            run_headless(node)
        elif args.cli:
            run_cli(node)
        else:
            # ── TUI mode (default) ──
            from .tui import run_tui

            run_tui(node)
    finally:
        node.stop()
        print("  Goodbye.")


if __name__ == "__main__":
    main()
