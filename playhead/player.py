from __future__ import annotations

import asyncio
import math
import os
import threading
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import soundfile as sf

from playhead.automation import (
    STREAM_AFTERTOUCH,
    STREAM_EXPRESSION,
    STREAM_MOD_WHEEL,
    STREAM_PAN,
    STREAM_PITCH_BEND,
    STREAM_TREMOLO,
    STREAM_VOLUME,
    AutomationPoint,
    CompactionSettings,
    compact,
    latest_at_or_before,
    resolve_compaction,
    sort_points,
)
from playhead.channel_state import (
    CC_EXPRESSION,
    CC_MOD_WHEEL,
    CC_PAN,
    CC_SUSTAIN,
    CC_TREMOLO_DEPTH,
    CC_VOLUME,
    RPN_CONTROLLERS,
    ChannelAutomationState,
    RpnEvent,
    cc_to_pan,
    clamp01,
    clamp11,
    derive_pitch_bend_range,
    validate_channel,
)
from playhead.clock import STARTED, TransportClock
from playhead.midi_out import CoreSink, DrumKitVoice, PolyVoice, make_voice
from playhead.sequence import Sequence, find_start_index_including_sustains
from playhead.tempo_map import TempoMeasureMap

MODE_MIDI = "midi"
MODE_EXTERNAL = "external"
AUDIO_MODES = (MODE_MIDI, MODE_EXTERNAL)


class TransportStateError(RuntimeError):
    """Operation not allowed in the current transport state."""


class AudioLoadError(RuntimeError):
    """External audio could not be loaded or decoded."""


# --- External audio ---


@dataclass(frozen=True)
class ExternalAudioSource:
    """An audio file aligned to the sequence timeline.

    offset_ms > 0 skips forward in the audio.
    """

    path: str
    name: str
    size: int
    last_modified: float
    offset_ms: float = 0.0

    @classmethod
    def from_path(cls, path: str, offset_ms: float = 0.0) -> "ExternalAudioSource":
        st = os.stat(path)
        return cls(path=str(path), name=os.path.basename(path), size=st.st_size, last_modified=st.st_mtime, offset_ms=float(offset_ms))

    @property
    def file_key(self) -> Tuple[str, int, float]:
        return (self.name, self.size, self.last_modified)

    @property
    def load_key(self) -> Tuple[str, int, float, float]:
        return self.file_key + (self.offset_ms,)


@dataclass(frozen=True)
class DecodedAudio:
    samples: Any  # float32 array, frames x channels
    sample_rate: int

    @property
    def frames(self) -> int:
        return len(self.samples)

    @property
    def duration_seconds(self) -> float:
        return self.frames / self.sample_rate if self.sample_rate > 0 else 0.0


AudioLoader = Callable[[ExternalAudioSource], Awaitable[DecodedAudio]]


class SoundfileLoader:
    """Decode an audio file off the event loop with soundfile."""

    async def __call__(self, source: ExternalAudioSource) -> DecodedAudio:
        data, sr = await asyncio.to_thread(sf.read, source.path, dtype="float32", always_2d=True)
        return DecodedAudio(samples=data, sample_rate=int(sr))


class ExternalAudioPlayer:
    """Abstract output for decoded external audio."""

    def start(self, audio: DecodedAudio, at_clock_time: float, offset_seconds: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def dispose(self) -> None:
        self.stop()


class LoggingAudioPlayer(ExternalAudioPlayer):
    """Silent player; reports what would be played."""

    def start(self, audio: DecodedAudio, at_clock_time: float, offset_seconds: float) -> None:
        print(f"[audio] start at={at_clock_time:.3f} offset={offset_seconds:.3f}s of {audio.duration_seconds:.3f}s", flush=True)

    def stop(self) -> None:
        print("[audio] stop", flush=True)


# --- Scheduler ---


@dataclass
class _ChannelStreams:
    range_points: List[AutomationPoint] = field(default_factory=list)
    pitch_bends: List[AutomationPoint] = field(default_factory=list)
    mod_wheel: List[AutomationPoint] = field(default_factory=list)
    aftertouch: List[AutomationPoint] = field(default_factory=list)
    tremolo: List[AutomationPoint] = field(default_factory=list)
    volume: List[AutomationPoint] = field(default_factory=list)
    expression: List[AutomationPoint] = field(default_factory=list)
    pan: List[AutomationPoint] = field(default_factory=list)
    sustain: List[AutomationPoint] = field(default_factory=list)
    rpn: List[RpnEvent] = field(default_factory=list)


_CC_STREAMS = {
    CC_MOD_WHEEL: "mod_wheel",
    CC_TREMOLO_DEPTH: "tremolo",
    CC_VOLUME: "volume",
    CC_EXPRESSION: "expression",
    CC_PAN: "pan",
    CC_SUSTAIN: "sustain",
}


@dataclass
class _Channel:
    state: ChannelAutomationState
    voice: PolyVoice


class PlaybackScheduler:
    """Schedules a sequence's notes and controller automation onto a transport clock.

    Every play_from() bumps a generation counter; continuations and clock
    callbacks captured under an older generation do nothing. Pausing stops
    the clock before anything else, so per-channel state is only written by
    clock callbacks while playing and by the scheduler while stopped.
    """

    def __init__(
        self,
        sequence: Sequence,
        sink: CoreSink,
        clock: Optional[TransportClock] = None,
        audio_mode: str = MODE_MIDI,
        external_source: Optional[ExternalAudioSource] = None,
        audio_loader: Optional[AudioLoader] = None,
        audio_player: Optional[ExternalAudioPlayer] = None,
        compaction: Optional[Dict[str, CompactionSettings]] = None,
    ):
        if audio_mode not in AUDIO_MODES:
            raise ValueError(f"unknown audio mode: {audio_mode!r}")
        self.sequence = sequence
        self.sink = sink
        self.clock = clock or TransportClock()
        self.timing = TempoMeasureMap.from_sequence(sequence)
        self.compaction = resolve_compaction(compaction)

        self._audio_mode = audio_mode
        self._external_source = external_source
        self._audio_loader: AudioLoader = audio_loader or SoundfileLoader()
        self._audio_player = audio_player or LoggingAudioPlayer()

        self._generation = 0
        self._disposed = False
        self._lock = threading.RLock()
        self._channels: Dict[int, _Channel] = {}
        self._drum_voices: Dict[int, DrumKitVoice] = {}
        self._streams: Optional[Dict[int, _ChannelStreams]] = None

        self._external_audio: Optional[DecodedAudio] = None
        self._external_file_key: Optional[Tuple[str, int, float]] = None
        self._load_key: Optional[Tuple[str, int, float]] = None
        self._load_task: Optional[asyncio.Task] = None

        self.clock.stop()
        self.clock.cancel_all()

    # --- Read-only queries ---
    @property
    def audio_mode(self) -> str:
        return self._audio_mode

    @property
    def external_source(self) -> Optional[ExternalAudioSource]:
        return self._external_source

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def duration_seconds(self) -> float:
        d = self.sequence.duration_seconds
        return d if math.isfinite(d) and d > 0 else self.timing.duration_seconds

    def is_playing(self) -> bool:
        return self.clock.state == STARTED

    def get_position_seconds(self) -> float:
        return self.clock.position

    def channel_state(self, channel: int) -> ChannelAutomationState:
        return self._channel(channel).state

    # --- Transport ---
    async def play_from(self, from_seconds: float) -> None:
        if self._disposed:
            return
        self._generation += 1
        gen = self._generation
        await self.sink.ensure_started()
        if self._disposed or gen != self._generation:
            return

        start = self._bound_seconds(from_seconds)
        # Reject malformed channels before touching any transport state.
        for track in self.sequence.tracks:
            validate_channel(track.channel)

        # Stop all scheduled events and restart cleanly.
        self.clock.stop()
        self.clock.cancel_all()
        self._stop_external()
        self._release_all_voices()
        # Restore output (pause mutes it).
        self.sink.master_gain(1.0)

        if self._audio_mode == MODE_EXTERNAL:
            await self._ensure_external_loaded()
            if gen != self._generation:
                return

        start_at = self.clock.now()
        if self._disposed or gen != self._generation:
            return
        if self._audio_mode == MODE_MIDI:
            try:
                self._schedule_automation(start, gen)
                self._schedule_notes(start, gen)
            except Exception:
                # Never leave a half-built schedule behind.
                self.clock.cancel_all()
                self._release_all_voices()
                self.sink.master_gain(0.0)
                raise
        else:
            self._start_external(start, start_at)

        if self._disposed or gen != self._generation:
            return
        self.clock.start(start_at, start)
        print(f"[player] play from={start:.3f}s mode={self._audio_mode} scheduled={self.clock.pending()}", flush=True)

    def pause(self) -> None:
        # Invalidate in-flight play_from() continuations and queued callbacks.
        self._generation += 1
        self.clock.pause()
        self.clock.cancel_all()
        self._stop_external()
        self._release_all_voices()
        # Hard-mute so nothing lingers.
        self.sink.master_gain(0.0)

    def set_position_seconds(self, seconds: float) -> None:
        if self.is_playing():
            raise TransportStateError("pause before setting the position")
        self.clock.position = self._bound_seconds(seconds)

    def set_audio_mode(self, mode: str, external_source: Optional[ExternalAudioSource] = None) -> None:
        if self._disposed:
            return
        if mode not in AUDIO_MODES:
            raise ValueError(f"unknown audio mode: {mode!r}")

        prev_mode = self._audio_mode
        prev = self._external_source
        prev_file_key = prev.file_key if prev else None
        prev_load_key = prev.load_key if prev else None
        next_file_key = external_source.file_key if external_source else None
        next_load_key = external_source.load_key if external_source else None

        self._audio_mode = mode
        self._external_source = external_source

        # A mode switch, or a different external source while external, stops playback.
        if mode != prev_mode or (mode == MODE_EXTERNAL and prev_load_key != next_load_key):
            self.pause()

        if mode == MODE_EXTERNAL and external_source is not None and prev_file_key != next_file_key:
            self._drop_external()
        if self._audio_mode != MODE_EXTERNAL or self._external_source is None:
            # Release decoded audio when leaving external mode.
            self._drop_external()
        print(f"[player] audio mode={mode}", flush=True)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self.pause()
        self.clock.stop()
        self.clock.cancel_all()
        self._drop_external()
        self._audio_player.dispose()
        self._channels.clear()
        self._drum_voices.clear()

    # --- Helpers ---
    def _bound_seconds(self, seconds: Any) -> float:
        s = float(seconds) if isinstance(seconds, (int, float)) else 0.0
        if math.isnan(s):
            s = 0.0
        return max(0.0, min(self.duration_seconds, s))

    def _channel(self, channel: int) -> _Channel:
        ch = validate_channel(channel)
        with self._lock:
            rec = self._channels.get(ch)
            if rec is None:
                rec = _Channel(state=ChannelAutomationState(channel=ch), voice=PolyVoice(self.sink, ch))
                self._channels[ch] = rec
            return rec

    def _drum_voice(self, channel: int) -> DrumKitVoice:
        ch = validate_channel(channel)
        with self._lock:
            voice = self._drum_voices.get(ch)
            if voice is None:
                voice = make_voice(self.sink, ch, is_drum=True)
                self._drum_voices[ch] = voice
            return voice

    def _release_all_voices(self) -> None:
        with self._lock:
            channels = list(self._channels.values())
        for rec in channels:
            rec.state.release_all()
            rec.voice.release_all()

    def _guard(self, gen: int, fn: Callable[..., None], *args: Any) -> Callable[[float], None]:
        def callback(time: float) -> None:
            if self._disposed or gen != self._generation or self._audio_mode != MODE_MIDI:
                return
            fn(time, *args)

        return callback

    # --- Automation ---
    def _gather_streams(self) -> Dict[int, _ChannelStreams]:
        by_channel: Dict[int, _ChannelStreams] = {}

        def entry(ch: int) -> _ChannelStreams:
            key = validate_channel(ch)
            if key not in by_channel:
                by_channel[key] = _ChannelStreams()
            return by_channel[key]

        # Merge across tracks; per-channel processing happens afterwards.
        for tr in self.sequence.tracks:
            if not tr.is_drum:
                e = entry(tr.channel)
                for pb in tr.pitch_bends:
                    e.pitch_bends.append(AutomationPoint(pb.time, pb.value))
                for cc in tr.control_changes:
                    name = _CC_STREAMS.get(cc.controller)
                    if name is not None:
                        getattr(e, name).append(AutomationPoint(cc.time, cc.value))
                    elif cc.controller in RPN_CONTROLLERS:
                        e.rpn.append(RpnEvent(cc.time, cc.controller, cc.value))
            for at in tr.channel_aftertouch:
                entry(at.channel).aftertouch.append(AutomationPoint(at.time, at.value))
            for at in tr.note_aftertouch:
                entry(at.channel).aftertouch.append(AutomationPoint(at.time, at.value))

        c = self.compaction
        for e in by_channel.values():
            e.range_points = derive_pitch_bend_range(e.rpn)
            e.pitch_bends = compact(e.pitch_bends, c[STREAM_PITCH_BEND])
            e.mod_wheel = compact(e.mod_wheel, c[STREAM_MOD_WHEEL])
            e.aftertouch = compact(e.aftertouch, c[STREAM_AFTERTOUCH])
            e.tremolo = compact(e.tremolo, c[STREAM_TREMOLO])
            e.volume = compact(e.volume, c[STREAM_VOLUME])
            e.expression = compact(e.expression, c[STREAM_EXPRESSION])
            e.pan = compact(e.pan, c[STREAM_PAN])
            e.sustain = sort_points(e.sustain)
        return by_channel

    def _schedule_latest_and_future(
        self, points: List[AutomationPoint], apply: Callable[[float, float], None], start: float, now: float, gen: int
    ) -> None:
        if not points:
            return
        latest = latest_at_or_before(points, start)
        if latest is not None:
            apply(now, latest.value)
        for p in points:
            if p.time <= start:
                continue
            self.clock.schedule_once(self._guard(gen, apply, p.value), p.time)

    def _schedule_automation(self, start: float, gen: int) -> None:
        if self._streams is None:
            self._streams = self._gather_streams()
        now = self.clock.now()

        for ch, streams in sorted(self._streams.items()):
            rec = self._channel(ch)
            # Fresh state per play_from() so nothing leaks across seeks.
            rec.state.reset()
            rec.voice.reset_effects()

            def run(points, handler, rec=rec):
                self._schedule_latest_and_future(points, partial(handler, rec), start, now, gen)

            run(streams.range_points, _apply_bend_range)
            run(streams.pitch_bends, _apply_pitch_bend)
            run(streams.mod_wheel, _apply_mod_wheel)
            run(streams.aftertouch, _apply_aftertouch)
            run(streams.tremolo, _apply_tremolo)
            run(streams.volume, _apply_volume)
            run(streams.expression, _apply_expression)
            run(streams.pan, _apply_pan)
            run(streams.sustain, _apply_sustain)

    # --- Notes ---
    def _schedule_notes(self, start: float, gen: int) -> None:
        start_tick = self.timing.seconds_to_ticks(start)
        for track in self.sequence.tracks:
            # Notes are sorted by start tick; skip those finished before the playhead.
            notes = track.notes[find_start_index_including_sustains(track.notes, start_tick) :]
            if track.is_drum:
                drum = self._drum_voice(track.channel)
                for note in notes:
                    if note.end_time <= start:
                        continue
                    at = max(note.start_time, start)
                    self.clock.schedule_once(self._guard(gen, _drum_hit, drum, note.pitch, clamp01(note.velocity)), at)
                continue

            rec = self._channel(track.channel)
            for note in notes:
                if note.end_time <= start:
                    continue
                at = max(note.start_time, start)
                self.clock.schedule_once(self._guard(gen, _note_attack, rec, note.pitch, clamp01(note.velocity)), at)
                self.clock.schedule_once(self._guard(gen, _note_release, rec, note.pitch), note.end_time)

    # --- External audio ---
    def _stop_external(self) -> None:
        if self._external_audio is not None:
            self._audio_player.stop()

    def _drop_external(self) -> None:
        self._load_key = None
        self._load_task = None
        self._stop_external()
        self._external_file_key = None
        self._external_audio = None

    async def _ensure_external_loaded(self) -> None:
        if self._disposed or self._audio_mode != MODE_EXTERNAL:
            return
        source = self._external_source
        if source is None:
            raise AudioLoadError("external audio mode requires a source")

        key = source.file_key
        if self._external_audio is not None and self._external_file_key == key:
            return
        if self._load_task is not None and self._load_key == key:
            await self._load_task
            return

        self._load_key = key
        task = asyncio.ensure_future(self._load_external(source, key))
        self._load_task = task

        def _clear(t: asyncio.Task) -> None:
            if self._load_task is t:
                self._load_task = None

        task.add_done_callback(_clear)
        await task

    async def _load_external(self, source: ExternalAudioSource, key: Tuple[str, int, float]) -> None:
        try:
            audio = await self._audio_loader(source)
        except Exception as e:
            print(f"[audio] load failed for {source.name}: {e}", flush=True)
            raise AudioLoadError(f"could not load {source.name}: {e}") from e

        # A newer load (or a mode change) superseded this one.
        if self._disposed or self._load_key != key:
            print(f"[audio] discarding stale load of {source.name}", flush=True)
            return

        self._stop_external()
        self._external_audio = audio
        self._external_file_key = key
        print(f"[audio] loaded {source.name} ({audio.duration_seconds:.3f}s @ {audio.sample_rate} Hz)", flush=True)

    def _start_external(self, start: float, start_at: float) -> None:
        if self._audio_mode != MODE_EXTERNAL:
            return
        if self._external_audio is None or self._external_source is None:
            return
        audio_pos = start + self._external_source.offset_ms / 1000.0
        if audio_pos >= 0:
            self._audio_player.start(self._external_audio, start_at, audio_pos)
        else:
            # Audio begins later than the timeline position.
            self._audio_player.start(self._external_audio, start_at - audio_pos, 0.0)


# --- Clock callback bodies ---


def _apply_bend_range(rec: _Channel, _time: float, value: float) -> None:
    rec.state.pitch_bend_range_semitones = max(0.0, value)
    rec.voice.set_detune(rec.state.detune_cents)


def _apply_pitch_bend(rec: _Channel, _time: float, value: float) -> None:
    rec.state.pitch_bend_value = clamp11(value)
    rec.voice.set_detune(rec.state.detune_cents)


def _apply_mod_wheel(rec: _Channel, _time: float, value: float) -> None:
    rec.state.mod_wheel = clamp01(value)
    rec.voice.set_vibrato_depth(rec.state.vibrato_depth)


def _apply_aftertouch(rec: _Channel, _time: float, value: float) -> None:
    rec.state.aftertouch = clamp01(value)
    rec.voice.set_vibrato_depth(rec.state.vibrato_depth)


def _apply_tremolo(rec: _Channel, _time: float, value: float) -> None:
    rec.state.tremolo_depth = clamp01(value)
    rec.voice.set_tremolo_depth(rec.state.tremolo_depth)


def _apply_volume(rec: _Channel, _time: float, value: float) -> None:
    rec.state.volume = clamp01(value)
    rec.voice.set_gain_db(rec.state.gain_db)


def _apply_expression(rec: _Channel, _time: float, value: float) -> None:
    rec.state.expression = clamp01(value)
    rec.voice.set_gain_db(rec.state.gain_db)


def _apply_pan(rec: _Channel, _time: float, value: float) -> None:
    rec.state.pan = cc_to_pan(value)
    rec.voice.set_pan(rec.state.pan)


def _apply_sustain(rec: _Channel, _time: float, value: float) -> None:
    for pitch in rec.state.set_sustain(value):
        rec.voice.release(pitch)


def _note_attack(_time: float, rec: _Channel, pitch: int, velocity: float) -> None:
    # A pedal-held voice of the same pitch is released before the new attack.
    for _ in range(rec.state.take_sustained(pitch)):
        rec.voice.release(pitch)
    rec.voice.attack(pitch, velocity)


def _note_release(_time: float, rec: _Channel, pitch: int) -> None:
    if rec.state.defer_release(pitch):
        return
    rec.voice.release(pitch)


def _drum_hit(_time: float, voice: DrumKitVoice, pitch: int, velocity: float) -> None:
    voice.attack(pitch, velocity)
