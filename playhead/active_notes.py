from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List

from playhead.sequence import Sequence, Track


@dataclass(frozen=True)
class _NoteEdge:
    time: float
    pitch: int
    on: bool


def _build_edges(tracks: Iterable[Track]) -> List[_NoteEdge]:
    edges: List[_NoteEdge] = []
    for track in tracks:
        for n in track.notes:
            values = (n.start_time, n.end_time, n.pitch, n.start_tick, n.end_tick)
            if not all(math.isfinite(v) for v in values):
                continue
            # Zero-length notes make on/off ordering ambiguous.
            if n.end_time <= n.start_time or n.end_tick <= n.start_tick:
                continue
            edges.append(_NoteEdge(n.start_time, n.pitch, True))
            edges.append(_NoteEdge(n.end_time, n.pitch, False))
    # Offs before ons at the same instant.
    edges.sort(key=lambda e: (e.time, e.on, e.pitch))
    return edges


class ActiveNoteTracker:
    """Sounding pitches at a playhead position, advanced incrementally.

    Feeds chord display; overlapping notes of the same pitch are counted so
    the pitch stays active until the last one ends.
    """

    def __init__(self, sequence: Sequence, track_indices: Iterable[int], include_drums: bool = False):
        tracks = []
        for i in track_indices:
            if 0 <= i < len(sequence.tracks):
                t = sequence.tracks[i]
                if include_drums or not t.is_drum:
                    tracks.append(t)
        self._edges = _build_edges(tracks)
        self._index = 0
        self._seconds = 0.0
        self._counts: Dict[int, int] = {}

    def seek(self, seconds: float) -> None:
        """Rebuild from scratch; O(N) but seeks are rare."""
        s = seconds if math.isfinite(seconds) else 0.0
        self._counts.clear()
        self._index = 0
        self._seconds = 0.0
        self.update(s)

    def update(self, seconds: float) -> None:
        s = max(0.0, seconds) if math.isfinite(seconds) else 0.0
        if s < self._seconds:
            self.seek(s)
            return
        while self._index < len(self._edges):
            e = self._edges[self._index]
            if e.time > s:
                break
            if e.on:
                self._counts[e.pitch] = self._counts.get(e.pitch, 0) + 1
            else:
                left = self._counts.get(e.pitch, 0) - 1
                if left <= 0:
                    self._counts.pop(e.pitch, None)
                else:
                    self._counts[e.pitch] = left
            self._index += 1
        self._seconds = s

    def active_pitches(self) -> List[int]:
        return sorted(self._counts)
