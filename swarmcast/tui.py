"""
swarmcast TUI — terminal dashboard for searching and downloading.

Built with Textual.  Launched by default from ``swarmcast``.
"""

from __future__ import annotations

from datetime import datetime

from textual import work
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Container, Horizontal, Vertical
from textual.screen import ModalScreen
from textual.widgets import DataTable, Footer, Header, Input, Label, RichLog, Static

from .client import format_size
from .directory import PeerRecord, SearchResult
from .node import Node
from .transfer import TransferError


# ==============================================================================
# Help Modal
# ==============================================================================


class HelpScreen(ModalScreen):
    """Full help overlay."""

    BINDINGS = [Binding("escape", "dismiss", "Close")]

    def compose(self) -> ComposeResult:
        with Container(id="help-dialog"):
            yield Label("SWARMCAST  —  Help", id="help-title")
            yield Static(
                "[bold #5ec4ff]Keybindings[/]\n"
                "\n"
                "  [#e0c97f]F1[/]          Show this help\n"
                "  [#e0c97f]/[/]           Focus the search bar\n"
                "  [#e0c97f]d[/]           Download the selected search result\n"
                "  [#e0c97f]c[/]           Cancel the selected transfer\n"
                "  [#e0c97f]Tab[/]         Cycle focus between panels\n"
                "  [#e0c97f]q[/]           Quit\n"
                "\n"
                "[bold #5ec4ff]Search bar[/]\n"
                "\n"
                "  Type part of a file name and press Enter. Peers that\n"
                "  share a matching file answer within a few seconds.\n"
                "\n"
                "  The [#718ca1]Playable[/] column shows how much of a download\n"
                "  can be read from the start without gaps.\n"
            )


# ==============================================================================
# Main TUI App
# ==============================================================================


class SwarmcastApp(App):
    """swarmcast — Terminal Dashboard."""

    TITLE = "SWARMCAST"
    SUB_TITLE = "LAN chunked file sharing"
    ENABLE_COMMAND_PALETTE = False

    CSS = """
    #main-container { height: 1fr; }
    #sidebar { width: 34; border-right: solid $primary; }
    #main-panel { width: 1fr; }
    .panel-title { padding: 0 1; text-style: bold; color: $accent; }
    #peer-table { height: 1fr; }
    #results-table { height: 1fr; }
    #transfers-table { height: 10; }
    #log-panel { height: 10; border-top: solid $primary; }
    #help-dialog {
        width: 64; height: auto; padding: 1 2;
        border: thick $primary; background: $surface;
    }
    HelpScreen { align: center middle; }
    """

    BINDINGS = [
        Binding("f1", "show_help", "Help", show=True),
        Binding("slash", "focus_search", "Search", show=True),
        Binding("d", "download", "Download", show=True),
        Binding("c", "cancel_transfer", "Cancel", show=True),
        Binding("q", "quit_app", "Quit", show=True),
    ]

    def __init__(self, node: Node):
        super().__init__()
        self.node = node
        self.theme = "textual-dark"

    # --------------------------------------------------------------------------
    # Layout
    # --------------------------------------------------------------------------

    def compose(self) -> ComposeResult:
        yield Header()

        with Horizontal(id="main-container"):
            # ── Sidebar ──
            with Vertical(id="sidebar"):
                yield Label("PEERS", classes="panel-title")
                yield DataTable(id="peer-table")

            # ── Main panel ──
            with Vertical(id="main-panel"):
                yield Input(placeholder="Search the network... (Enter to send)", id="search-input")
                yield Label("SEARCH RESULTS", classes="panel-title")
                yield DataTable(id="results-table")
                yield Label("TRANSFERS", classes="panel-title")
                yield DataTable(id="transfers-table")

        # ── Log panel ──
        with Vertical(id="log-panel"):
            yield RichLog(id="log-view", highlight=True, markup=True)

        yield Footer()

    # --------------------------------------------------------------------------
    # Startup
    # --------------------------------------------------------------------------

    def on_mount(self) -> None:
        self._setup_tables()

        self.node.on_new_peer = lambda p: self.call_from_thread(self._peer_event, p, True)
        self.node.on_peer_lost = lambda p: self.call_from_thread(self._peer_event, p, False)
        self.node.on_search_result = lambda r: self.call_from_thread(self._search_result, r)
        self.node.on_transfer_complete = lambda name, _h: self.call_from_thread(
            self._log, f"[#00ff9f]Download complete:[/] {name}"
        )

        # Periodic refresh timers
        self.set_interval(2.0, self._refresh_peers)
        self.set_interval(0.5, self._refresh_transfers)

        self._log(
            f"swarmcast started  [bold #5ec4ff]peer_id={self.node.peer_id}[/]  "
            f"tcp_port={self.node.server.port}"
        )
        self._log(f"Sharing {len(self.node.catalog)} files from [#718ca1]{self.node.shared_dir}[/]")
        self._log("Discovering peers on the network...")

    def _setup_tables(self) -> None:
        peers = self.query_one("#peer-table", DataTable)
        peers.add_columns("Peer", "Address")
        peers.cursor_type = "row"

        results = self.query_one("#results-table", DataTable)
        results.add_columns("Filename", "Size", "Peers", "Hash")
        results.cursor_type = "row"
        results.zebra_stripes = True

        transfers = self.query_one("#transfers-table", DataTable)
        transfers.add_columns("Filename", "Progress", "Chunks", "Playable", "Sources", "State")
        transfers.cursor_type = "row"

    # --------------------------------------------------------------------------
    # Logging
    # --------------------------------------------------------------------------

    def _log(self, message: str) -> None:
        log_view = self.query_one("#log-view", RichLog)
        ts = datetime.now().strftime("%H:%M:%S")
        log_view.write(f"[#41505e]{ts}[/]  {message}")

    # --------------------------------------------------------------------------
    # Node events (marshalled onto the UI thread)
    # --------------------------------------------------------------------------

    def _peer_event(self, peer: PeerRecord, found: bool) -> None:
        if found:
            self._log(
                f"[#00ff9f]Discovered[/] peer [bold #5ec4ff]{peer.peer_id}[/] "
                f"([#718ca1]{peer.address}:{peer.port}[/])"
            )
        else:
            self._log(f"[#e74c3c]Lost[/] peer [#718ca1]{peer.peer_id}[/]")
        self._refresh_peers()

    def _search_result(self, result: SearchResult) -> None:
        table = self.query_one("#results-table", DataTable)
        row = (result.name, format_size(result.size), ", ".join(result.peer_ids), result.file_hash[:12])
        if result.file_hash in table.rows:
            for column, value in zip(table.columns, row):
                table.update_cell(result.file_hash, column, value)
        else:
            table.add_row(*row, key=result.file_hash)
            self._log(f"Found [bold]{result.name}[/] ({format_size(result.size)})")

    # --------------------------------------------------------------------------
    # Polling
    # --------------------------------------------------------------------------

    def _refresh_peers(self) -> None:
        table = self.query_one("#peer-table", DataTable)
        table.clear()
        for p in sorted(self.node.peers(), key=lambda p: p.peer_id):
            table.add_row(p.peer_id, f"{p.address}:{p.port}")
        self.sub_title = f"{len(table.rows)} peers"

    def _refresh_transfers(self) -> None:
        table = self.query_one("#transfers-table", DataTable)
        for t in self.node.transfers.transfers():
            if t.is_complete():
                state = "[#00ff9f]done[/]"
            elif t.cancelled.is_set():
                state = "[#e74c3c]cancelled[/]"
            else:
                state = "active"
            row = (
                t.name,
                f"{t.progress():5.1f}%",
                f"{t.completed_count()}/{t.total_chunks}",
                format_size(t.playable_bytes()),
                str(len(t.sources)),
                state,
            )
            # Update in place so the cursor stays put
            if t.file_hash in table.rows:
                for column, value in zip(table.columns, row):
                    table.update_cell(t.file_hash, column, value)
            else:
                table.add_row(*row, key=t.file_hash)

    # --------------------------------------------------------------------------
    # Actions
    # --------------------------------------------------------------------------

    def action_show_help(self) -> None:
        self.push_screen(HelpScreen())

    def action_focus_search(self) -> None:
        self.query_one("#search-input", Input).focus()

    def action_quit_app(self) -> None:
        self.exit()

    def action_download(self) -> None:
        table = self.query_one("#results-table", DataTable)
        if table.row_count == 0:
            self._log("[#e0c97f]No search result selected.[/]")
            return
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        try:
            state = self.node.download(row_key.value)
        except TransferError as e:
            self._log(f"[#e74c3c]Download failed:[/] {e}")
            return
        self._log(f"Downloading [bold]{state.name}[/] -> [#718ca1]{state.output_path}[/]")

    def action_cancel_transfer(self) -> None:
        table = self.query_one("#transfers-table", DataTable)
        if table.row_count == 0:
            return
        row_key, _ = table.coordinate_to_cell_key(table.cursor_coordinate)
        self._cancel_async(row_key.value)

    @work(thread=True)
    def _cancel_async(self, file_hash: str) -> None:
        if self.node.transfers.cancel_transfer(file_hash):
            self.call_from_thread(self._log, "Transfer cancelled.")

    def on_input_submitted(self, event: Input.Submitted) -> None:
        if event.input.id != "search-input":
            return
        text = event.value.strip()
        event.input.value = ""
        if not text:
            return
        self.node.search(text)
        self._log(f"Searching for [bold]{text}[/]...")


# ==============================================================================
# Entry point (called from peer.py)
# ==============================================================================


def run_tui(node: Node) -> None:
    """Launch the swarmcast TUI."""
    app = SwarmcastApp(node)
    app.run()
