"""
Terminal monitor built on rich.live.

Reads the engine only through try_snapshot(); when that returns None (a lock
is busy) the frame is skipped and the previous one stays on screen.
"""

from __future__ import annotations

import asyncio
from typing import Optional

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from hedgearb.engine import ArbitrageEngine, EngineSnapshot
from hedgearb.strategy.controller import compute_gap


def _fmt(value: Optional[float], digits: int = 4, suffix: str = "") -> str:
    return "-" if value is None else f"{value:.{digits}f}{suffix}"


class Dashboard:
    def __init__(
        self,
        engine: ArbitrageEngine,
        venue_a: str,
        venue_b: str,
        symbol: str,
        refresh_sec: float = 0.5,
        console: Optional[Console] = None,
    ) -> None:
        self.engine = engine
        self.venue_a = venue_a
        self.venue_b = venue_b
        self.symbol = symbol
        self.refresh_sec = refresh_sec
        self.console = console
        self.frames_rendered = 0
        self.frames_skipped = 0
        self._running = False

    def render(self, snap: EngineSnapshot) -> Group:
        quotes = Table(box=box.SIMPLE_HEAD, expand=True)
        quotes.add_column("Venue", style="cyan")
        quotes.add_column("Last", justify="right")
        quotes.add_column("Long @", justify="right")
        quotes.add_column("Short @", justify="right")
        quotes.add_column("Mode", justify="center")
        for venue in (self.venue_a, self.venue_b):
            q = snap.quotes.get(venue)
            quotes.add_row(
                venue,
                _fmt(snap.prices.get(venue)),
                _fmt(q.long_price if q else None),
                _fmt(q.short_price if q else None),
                q.mode.value if q else "-",
            )

        raw_gap = None
        pa, pb = snap.prices.get(self.venue_a), snap.prices.get(self.venue_b)
        if pa is not None and pb is not None:
            raw_gap = compute_gap(pa, pb)

        gaps = Table(box=box.SIMPLE, show_header=False, expand=True)
        gaps.add_column(style="dim")
        gaps.add_column(justify="right")
        gaps.add_row("raw top-of-book gap", _fmt(raw_gap, suffix="%"))
        gaps.add_row(f"short {self.venue_a} / long {self.venue_b}", _fmt(snap.gap_ab, suffix="%"))
        gaps.add_row(f"short {self.venue_b} / long {self.venue_a}", _fmt(snap.gap_ba, suffix="%"))

        st = snap.state
        pos = Table(box=box.SIMPLE, show_header=False, expand=True)
        pos.add_column(style="dim")
        pos.add_column(justify="right")
        phase_style = "bold green" if st.is_open else "white"
        pos.add_row("phase", f"[{phase_style}]{st.phase.value}[/{phase_style}]")
        if st.is_open:
            pos.add_row("entry gap", _fmt(st.entry_gap, suffix="%"))
            pos.add_row(f"{self.venue_a}", st.leg_a_side.value)
            pos.add_row(f"{self.venue_b}", st.leg_b_side.value)
            pos.add_row("age", f"{snap.taken_at - st.opened_at:.1f}s")
        if snap.in_flight:
            pos.add_row("orders", "[yellow]in flight[/yellow]")
        if snap.exposure is not None:
            ex = snap.exposure
            pos.add_row(
                "[bold red]HALTED[/bold red]",
                f"[red]{ex.filled_venue} {ex.filled_side.value} {ex.filled_qty:g} unhedged"
                + (" (outcome unknown)" if ex.outcome_unknown else "")
                + "[/red]",
            )

        return Group(
            Panel(quotes, title=f"[bold]{self.symbol}[/bold]", border_style="blue"),
            Panel(gaps, title="Gaps", border_style="blue"),
            Panel(pos, title="Position", border_style="red" if snap.exposure else "blue"),
        )

    def frame(self) -> Optional[Group]:
        snap = self.engine.try_snapshot()
        if snap is None:
            self.frames_skipped += 1
            return None
        self.frames_rendered += 1
        return self.render(snap)

    async def run(self) -> None:
        self._running = True
        placeholder = Panel("waiting for market data...", border_style="dim")
        with Live(placeholder, console=self.console, refresh_per_second=4, transient=False) as live:
            while self._running:
                view = self.frame()
                if view is not None:
                    live.update(view)
                await asyncio.sleep(self.refresh_sec)

    def stop(self) -> None:
        self._running = False
