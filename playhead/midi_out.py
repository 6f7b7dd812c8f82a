from __future__ import annotations

import math
from typing import Any, Dict, List, Optional, Tuple

import mido

from playhead.channel_state import (
    CC_DATA_ENTRY_LSB,
    CC_DATA_ENTRY_MSB,
    CC_MOD_WHEEL,
    CC_PAN,
    CC_RPN_LSB,
    CC_RPN_MSB,
    CC_SUSTAIN,
    CC_TREMOLO_DEPTH,
    CC_VOLUME,
    clamp01,
    clamp11,
    to_7bit,
    validate_channel,
)

# Bend range programmed into every device channel; detune is expressed against it.
DEVICE_BEND_RANGE_SEMITONES = 24

CC_ALL_SOUND_OFF = 120
CC_ALL_NOTES_OFF = 123


class CoreSink:
    """Abstract instrument interface used by the playback scheduler."""

    async def ensure_started(self) -> None:
        """One-time output start-up; may suspend."""
        return None

    def note_on(self, channel: int, pitch: int, velocity: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def note_off(self, channel: int, pitch: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def pitch_bend_cents(self, channel: int, cents: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def set_gain_db(self, channel: int, db: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def set_pan(self, channel: int, pan: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def set_vibrato_depth(self, channel: int, depth: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def set_tremolo_depth(self, channel: int, depth: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def master_gain(self, gain: float) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def panic(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def control_change(self, channel: int, control: int, value: int) -> None:  # pragma: no cover - interface
        raise NotImplementedError


class VirtualSink(CoreSink):
    """A minimal sink capturing events for tests and demos.

    Records tuples like (type, args...). Types: 'start', 'on', 'off', 'bend',
    'gain_db', 'pan', 'vibrato', 'tremolo', 'master', 'cc', 'panic'.
    """

    def __init__(self) -> None:
        self.events: List[Tuple[Any, ...]] = []
        self.started = 0

    async def ensure_started(self) -> None:
        self.started += 1
        self.events.append(("start",))

    def note_on(self, channel: int, pitch: int, velocity: int) -> None:
        self.events.append(("on", channel, pitch, velocity))

    def note_off(self, channel: int, pitch: int) -> None:
        self.events.append(("off", channel, pitch, 0))

    def pitch_bend_cents(self, channel: int, cents: float) -> None:
        self.events.append(("bend", channel, cents))

    def set_gain_db(self, channel: int, db: float) -> None:
        self.events.append(("gain_db", channel, db))

    def set_pan(self, channel: int, pan: float) -> None:
        self.events.append(("pan", channel, pan))

    def set_vibrato_depth(self, channel: int, depth: float) -> None:
        self.events.append(("vibrato", channel, depth))

    def set_tremolo_depth(self, channel: int, depth: float) -> None:
        self.events.append(("tremolo", channel, depth))

    def master_gain(self, gain: float) -> None:
        self.events.append(("master", gain))

    def panic(self) -> None:
        self.events.append(("panic", -1, -1, 0))

    def control_change(self, channel: int, control: int, value: int) -> None:
        self.events.append(("cc", channel, control, max(0, min(127, int(value)))))

    def of_type(self, kind: str) -> List[Tuple[Any, ...]]:
        return [e for e in self.events if e[0] == kind]


def cents_to_pitchwheel(cents: float, bend_range_semitones: float = DEVICE_BEND_RANGE_SEMITONES) -> int:
    span = bend_range_semitones * 100.0
    if span <= 0:
        return 0
    return max(-8192, min(8191, int(round(cents / span * 8192))))


def gain_db_to_cc7(db: float) -> int:
    # GM volume curve: dB = 40 * log10(cc / 127)
    if not math.isfinite(db) or db <= -80.0:
        return 0
    return to_7bit(clamp01(10 ** (db / 40.0)))


def pan_to_cc10(pan: float) -> int:
    return to_7bit((clamp11(pan) + 1.0) / 2.0)


class MidoSink(CoreSink):
    def __init__(self, out_port, bend_range_semitones: int = DEVICE_BEND_RANGE_SEMITONES):
        self.out = out_port
        self.bend_range_semitones = int(bend_range_semitones)
        self._started = False

    async def ensure_started(self) -> None:
        if self._started:
            return
        self._started = True
        # RPN 0,0 (pitch bend sensitivity), then null the selector.
        for ch in range(16):
            for control, value in (
                (CC_RPN_MSB, 0),
                (CC_RPN_LSB, 0),
                (CC_DATA_ENTRY_MSB, self.bend_range_semitones),
                (CC_DATA_ENTRY_LSB, 0),
                (CC_RPN_MSB, 127),
                (CC_RPN_LSB, 127),
            ):
                self.control_change(ch, control, value)

    def note_on(self, channel: int, pitch: int, velocity: int) -> None:
        self.out.send(mido.Message("note_on", note=int(pitch), velocity=int(velocity), channel=int(channel)))

    def note_off(self, channel: int, pitch: int) -> None:
        self.out.send(mido.Message("note_off", note=int(pitch), velocity=0, channel=int(channel)))

    def pitch_bend_cents(self, channel: int, cents: float) -> None:
        pitch = cents_to_pitchwheel(cents, self.bend_range_semitones)
        self.out.send(mido.Message("pitchwheel", pitch=pitch, channel=int(channel)))

    def set_gain_db(self, channel: int, db: float) -> None:
        self.control_change(channel, CC_VOLUME, gain_db_to_cc7(db))

    def set_pan(self, channel: int, pan: float) -> None:
        self.control_change(channel, CC_PAN, pan_to_cc10(pan))

    def set_vibrato_depth(self, channel: int, depth: float) -> None:
        self.control_change(channel, CC_MOD_WHEEL, to_7bit(clamp01(depth)))

    def set_tremolo_depth(self, channel: int, depth: float) -> None:
        self.control_change(channel, CC_TREMOLO_DEPTH, to_7bit(clamp01(depth)))

    def master_gain(self, gain: float) -> None:
        # Universal real-time SysEx: master volume (14-bit, LSB first)
        v = max(0, min(16383, int(round(clamp01(gain) * 16383))))
        self.out.send(mido.Message("sysex", data=[0x7F, 0x7F, 0x04, 0x01, v & 0x7F, (v >> 7) & 0x7F]))

    def panic(self) -> None:
        # Send All Notes Off across all channels
        for ch in range(16):
            # Sustain off
            self.out.send(mido.Message("control_change", control=CC_SUSTAIN, value=0, channel=ch))
            # All Sound Off (120) then All Notes Off (123)
            self.out.send(mido.Message("control_change", control=CC_ALL_SOUND_OFF, value=0, channel=ch))
            self.out.send(mido.Message("control_change", control=CC_ALL_NOTES_OFF, value=0, channel=ch))

    def control_change(self, channel: int, control: int, value: int) -> None:
        self.out.send(mido.Message("control_change", control=int(control), value=int(max(0, min(127, value))), channel=int(channel)))


# --- Voices ---


class PolyVoice:
    """Pitched instrument on one channel; keeps a ledger of sounding pitches."""

    is_drum = False

    def __init__(self, sink: CoreSink, channel: int):
        self.sink = sink
        self.channel = validate_channel(channel)
        self._sounding: Dict[int, int] = {}

    def attack(self, pitch: int, velocity: float) -> None:
        vel = max(1, to_7bit(clamp01(velocity)))
        self.sink.note_on(self.channel, pitch, vel)
        self._sounding[pitch] = self._sounding.get(pitch, 0) + 1

    def release(self, pitch: int) -> None:
        count = self._sounding.get(pitch, 0)
        if count <= 0:
            return
        self.sink.note_off(self.channel, pitch)
        if count == 1:
            del self._sounding[pitch]
        else:
            self._sounding[pitch] = count - 1

    def release_all(self) -> None:
        for pitch in sorted(self._sounding):
            self.sink.note_off(self.channel, pitch)
        self._sounding.clear()

    def sounding(self) -> List[int]:
        return sorted(self._sounding)

    def set_detune(self, cents: float) -> None:
        self.sink.pitch_bend_cents(self.channel, cents)

    def set_gain_db(self, db: float) -> None:
        self.sink.set_gain_db(self.channel, db)

    def set_pan(self, pan: float) -> None:
        self.sink.set_pan(self.channel, pan)

    def set_vibrato_depth(self, depth: float) -> None:
        self.sink.set_vibrato_depth(self.channel, depth)

    def set_tremolo_depth(self, depth: float) -> None:
        self.sink.set_tremolo_depth(self.channel, depth)

    def reset_effects(self) -> None:
        self.set_detune(0.0)
        self.set_vibrato_depth(0.0)
        self.set_tremolo_depth(0.0)
        self.set_pan(0.0)
        self.set_gain_db(0.0)


GM_KICK = 36
GM_SNARE = 38
GM_CLOSED_HAT = 42

# Basic General MIDI subset; everything else falls back to a short hat.
DRUM_MAP: Dict[int, int] = {
    35: GM_KICK,
    36: GM_KICK,
    38: GM_SNARE,
    40: GM_SNARE,
    42: GM_CLOSED_HAT,
    44: GM_CLOSED_HAT,
    46: GM_CLOSED_HAT,
}
DRUM_FALLBACK_MIN_VELOCITY = 0.2


class DrumKitVoice:
    """One-shot kit: kick, snare and hat. Releases and channel effects are ignored."""

    is_drum = True

    def __init__(self, sink: CoreSink, channel: int = 9):
        self.sink = sink
        self.channel = validate_channel(channel)

    def attack(self, pitch: int, velocity: float) -> None:
        piece = DRUM_MAP.get(pitch)
        v = clamp01(velocity)
        if piece is None:
            piece = GM_CLOSED_HAT
            v = max(DRUM_FALLBACK_MIN_VELOCITY, v)
        self.sink.note_on(self.channel, piece, max(1, to_7bit(v)))
        self.sink.note_off(self.channel, piece)

    def release(self, pitch: int) -> None:
        return None

    def release_all(self) -> None:
        return None

    def sounding(self) -> List[int]:
        return []

    def set_detune(self, cents: float) -> None:
        return None

    def reset_effects(self) -> None:
        return None


def make_voice(sink: CoreSink, channel: int, is_drum: bool):
    if is_drum:
        return DrumKitVoice(sink, channel)
    return PolyVoice(sink, channel)


# --- Ports ---


class _DummyOut:
    def send(self, *_args, **_kwargs):
        pass

    def close(self):
        pass


class _DummyIn:
    def close(self):
        pass


def _first_matching(names: List[str], name_filter: Optional[str]) -> Optional[str]:
    if name_filter:
        for name in names:
            if name_filter in name:
                return name
        # Requested filter not found: safe fallback
        return None
    return names[0] if names else None


def open_mido_output(name_filter: Optional[str] = None):
    """Open a Mido output port with safe fallbacks.

    If the system MIDI stack is inaccessible, or a specific port is requested
    but not found, return a dummy object exposing `.send()` rather than
    crashing in headless CI environments.
    """
    try:
        name = _first_matching(mido.get_output_names(), name_filter)
        if name is None:
            return _DummyOut()
        return mido.open_output(name)
    except Exception as e:
        # Accessing system MIDI may raise in sandboxed environments
        print(f"[midi] output unavailable ({e}); using dummy port", flush=True)
        return _DummyOut()


def open_mido_input(name_filter: Optional[str] = None, callback=None):
    """Open a Mido input port with safe fallbacks.

    Returns a dummy object with `.close()` when system MIDI is unavailable or
    access fails (e.g., CI, sandboxed runners).
    """
    try:
        name = _first_matching(mido.get_input_names(), name_filter)
        if name is None:
            return _DummyIn()
        return mido.open_input(name, callback=callback)
    except Exception as e:
        print(f"[midi] input unavailable ({e}); using dummy port", flush=True)
        return _DummyIn()
