from __future__ import annotations

import asyncio
import math
import unittest

from playhead.channel_state import CC_DATA_ENTRY_MSB, CC_PAN, CC_RPN_LSB, CC_RPN_MSB, CC_SUSTAIN, CC_VOLUME
from playhead.clock import TransportClock
from playhead.midi_out import VirtualSink
from playhead.player import (
    MODE_EXTERNAL,
    MODE_MIDI,
    AudioLoadError,
    DecodedAudio,
    ExternalAudioPlayer,
    ExternalAudioSource,
    PlaybackScheduler,
    TransportStateError,
)
from playhead.sequence import ChannelAftertouchEvent, ControlChangeEvent, Note, PitchBendEvent, Sequence, Track
from playhead.tempo_map import TempoEvent

# 120 bpm at 480 ppq
TICKS_PER_SECOND = 960


class FakeTime:
    def __init__(self, t=100.0):
        self.t = t

    def __call__(self):
        return self.t


class RecordingClock(TransportClock):
    """Keeps every scheduled callback so tests can fire them after a cancel."""

    def __init__(self, time_source):
        super().__init__(time_source=time_source, threaded=False)
        self.scheduled = []

    def schedule_once(self, callback, position_seconds):
        self.scheduled.append((position_seconds, callback))
        return super().schedule_once(callback, position_seconds)


class SlowStartSink(VirtualSink):
    async def ensure_started(self) -> None:
        await asyncio.sleep(0)
        await super().ensure_started()


class RecordingAudioPlayer(ExternalAudioPlayer):
    def __init__(self):
        self.starts = []
        self.stops = 0
        self.disposed = False

    def start(self, audio, at_clock_time, offset_seconds):
        self.starts.append((audio, at_clock_time, offset_seconds))

    def stop(self):
        self.stops += 1

    def dispose(self):
        self.disposed = True
        super().dispose()


class FakeLoader:
    def __init__(self, fail=False, delay=0.0):
        self.calls = 0
        self.names = []
        self.fail = fail
        self.delay = delay

    async def __call__(self, source):
        self.calls += 1
        self.names.append(source.name)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise OSError("unsupported format")
        return DecodedAudio(samples=[[0.0]] * 4800, sample_rate=4800)


def note(pitch, start, duration, velocity=0.8):
    return Note(
        pitch=pitch,
        velocity=velocity,
        start_tick=int(start * TICKS_PER_SECOND),
        duration_ticks=int(duration * TICKS_PER_SECOND),
        start_time=start,
        duration=duration,
    )


def cc(controller, time, value):
    return ControlChangeEvent(controller=controller, tick=int(time * TICKS_PER_SECOND), time=time, value=value)


def bend(time, value):
    return PitchBendEvent(tick=int(time * TICKS_PER_SECOND), time=time, value=value)


def make_sequence(*tracks, duration=4.0):
    return Sequence(
        ticks_per_quarter=480,
        duration_ticks=int(duration * TICKS_PER_SECOND),
        duration_seconds=duration,
        tempos=(TempoEvent(tick=0, bpm=120.0),),
        tracks=tuple(tracks),
    )


def make_source(offset_ms=0.0, name="take.wav", size=1024):
    return ExternalAudioSource(path=f"/tmp/{name}", name=name, size=size, last_modified=1.0, offset_ms=offset_ms)


class PlayerTestCase(unittest.IsolatedAsyncioTestCase):
    def make_player(self, *tracks, sink=None, **kwargs):
        self.now = FakeTime()
        self.clock = RecordingClock(self.now)
        self.sink = sink or VirtualSink()
        return PlaybackScheduler(make_sequence(*tracks), self.sink, clock=self.clock, **kwargs)

    def advance(self, t):
        self.now.t = t
        return self.clock.poll()


class TestNoteScheduling(PlayerTestCase):
    async def test_note_on_and_off(self):
        p = self.make_player(Track(index=0, name="Keys", channel=2, notes=(note(60, 0.5, 0.5, velocity=1.0),)))
        await p.play_from(0.0)
        self.assertTrue(p.is_playing())
        self.assertEqual(self.sink.of_type("master"), [("master", 1.0)])
        self.advance(100.5)
        self.assertEqual(self.sink.of_type("on"), [("on", 2, 60, 127)])
        self.advance(101.0)
        self.assertEqual(self.sink.of_type("off"), [("off", 2, 60, 0)])

    async def test_note_sounding_at_start_is_attacked(self):
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.0, 2.0), note(62, 0.2, 0.3))))
        await p.play_from(1.0)
        self.assertEqual(self.advance(100.0), 1)
        self.assertEqual([e[2] for e in self.sink.of_type("on")], [60])
        self.assertAlmostEqual(p.get_position_seconds(), 1.0)

    async def test_seek_schedules_only_sounding_and_later_notes(self):
        p = self.make_player(
            Track(index=0, name="", channel=0, notes=(note(60, 0.0, 0.5), note(62, 0.5, 0.5), note(64, 1.0, 3.0), note(65, 3.5, 0.2)))
        )
        await p.play_from(3.0)
        self.assertEqual(self.clock.pending(), 4)
        self.advance(100.0)
        self.assertEqual([e[2] for e in self.sink.of_type("on")], [64])

    async def test_drum_track_uses_kit(self):
        p = self.make_player(Track(index=0, name="Drums", channel=9, is_drum=True, notes=(note(35, 0.0, 0.1), note(49, 0.1, 0.1, velocity=0.0))))
        await p.play_from(0.0)
        self.advance(100.5)
        self.assertEqual(self.sink.of_type("on"), [("on", 9, 36, 102), ("on", 9, 42, 25)])
        self.assertEqual(self.sink.of_type("off"), [("off", 9, 36, 0), ("off", 9, 42, 0)])

    async def test_sustain_pedal_holds_release(self):
        p = self.make_player(
            Track(
                index=0,
                name="Piano",
                channel=0,
                notes=(note(60, 0.0, 1.0),),
                control_changes=(cc(CC_SUSTAIN, 0.5, 1.0), cc(CC_SUSTAIN, 1.5, 0.0)),
            )
        )
        await p.play_from(0.0)
        self.advance(100.0)
        self.advance(100.5)
        self.assertTrue(p.channel_state(0).sustain_down)
        self.advance(101.0)
        self.assertEqual(self.sink.of_type("off"), [])
        self.advance(101.5)
        self.assertEqual(self.sink.of_type("off"), [("off", 0, 60, 0)])

    async def test_reattack_releases_pedal_held_voice(self):
        p = self.make_player(
            Track(
                index=0,
                name="",
                channel=0,
                notes=(note(60, 0.0, 0.5), note(60, 1.0, 0.5)),
                control_changes=(cc(CC_SUSTAIN, 0.0, 1.0),),
            )
        )
        await p.play_from(0.0)
        self.advance(100.9)
        self.assertEqual(self.sink.of_type("off"), [])
        self.advance(101.0)
        kinds = [e[0] for e in self.sink.events if e[0] in ("on", "off")]
        self.assertEqual(kinds, ["on", "off", "on"])

    async def test_pedal_up_releases_overlapping_same_pitch(self):
        p = self.make_player(
            Track(
                index=0,
                name="",
                channel=0,
                notes=(note(60, 0.0, 1.0), note(60, 0.2, 1.0)),
                control_changes=(cc(CC_SUSTAIN, 0.1, 1.0), cc(CC_SUSTAIN, 2.0, 0.0)),
            )
        )
        await p.play_from(0.0)
        self.advance(101.5)
        self.assertEqual(self.sink.of_type("off"), [])
        self.advance(102.0)
        self.assertEqual(self.sink.of_type("off"), [("off", 0, 60, 0), ("off", 0, 60, 0)])
        p.pause()
        self.assertEqual(len(self.sink.of_type("off")), 2)

    async def test_bounds_start(self):
        p = self.make_player(Track(index=0, name="", channel=0))
        await p.play_from(float("nan"))
        self.assertEqual(p.get_position_seconds(), 0.0)
        await p.play_from(99.0)
        self.assertEqual(p.get_position_seconds(), 4.0)
        await p.play_from(-3.0)
        self.assertEqual(p.get_position_seconds(), 0.0)


class TestAutomation(PlayerTestCase):
    async def test_rpn_bend_range(self):
        p = self.make_player(
            Track(
                index=0,
                name="Lead",
                channel=0,
                pitch_bends=(bend(0.0, 0.5),),
                control_changes=(cc(CC_RPN_MSB, 0.0, 0.0), cc(CC_RPN_LSB, 0.0, 0.0), cc(CC_DATA_ENTRY_MSB, 0.0, 12 / 127)),
            )
        )
        await p.play_from(0.0)
        self.assertEqual(p.channel_state(0).pitch_bend_range_semitones, 12.0)
        self.assertAlmostEqual(self.sink.of_type("bend")[-1][2], 600.0)

    async def test_volume_and_pan(self):
        p = self.make_player(
            Track(index=0, name="", channel=1, control_changes=(cc(CC_VOLUME, 0.0, 0.5), cc(CC_PAN, 0.0, 0.0)))
        )
        await p.play_from(0.0)
        self.assertAlmostEqual(self.sink.of_type("gain_db")[-1][2], 20 * math.log10(0.5))
        self.assertEqual(self.sink.of_type("pan")[-1], ("pan", 1, -1.0))

    async def test_dense_bends_are_compacted(self):
        bends = tuple(bend(1.0 + i * 0.001, i / 99) for i in range(100))
        p = self.make_player(Track(index=0, name="", channel=0, pitch_bends=bends))
        await p.play_from(0.0)
        self.assertLess(self.clock.pending(), 20)
        self.advance(102.0)
        self.assertAlmostEqual(self.sink.of_type("bend")[-1][2], 200.0)

    async def test_resume_applies_latest_values(self):
        p = self.make_player(Track(index=0, name="", channel=0, pitch_bends=(bend(0.5, 0.25), bend(2.0, 1.0))))
        await p.play_from(0.0)
        self.advance(100.7)
        p.pause()
        self.sink.events.clear()
        await p.play_from(1.0)
        # Applied immediately, before any clock callback runs.
        self.assertAlmostEqual(self.sink.of_type("bend")[-1][2], 50.0)

    async def test_drum_tracks_do_not_drive_channel_automation(self):
        p = self.make_player(Track(index=0, name="", channel=9, is_drum=True, pitch_bends=(bend(0.0, 1.0),)))
        await p.play_from(0.0)
        self.assertEqual(self.sink.of_type("bend"), [])


class TestTransport(PlayerTestCase):
    async def test_pause_releases_and_mutes(self):
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.0, 2.0),)))
        await p.play_from(0.0)
        self.advance(100.5)
        p.pause()
        self.assertFalse(p.is_playing())
        self.assertAlmostEqual(p.get_position_seconds(), 0.5)
        self.assertEqual(self.sink.of_type("off"), [("off", 0, 60, 0)])
        self.assertEqual(self.sink.of_type("master")[-1], ("master", 0.0))
        self.assertEqual(self.clock.pending(), 0)

    async def test_set_position_requires_pause(self):
        p = self.make_player(Track(index=0, name="", channel=0))
        await p.play_from(0.0)
        with self.assertRaises(TransportStateError):
            p.set_position_seconds(1.0)
        p.pause()
        p.set_position_seconds(10.0)
        self.assertEqual(p.get_position_seconds(), 4.0)

    async def test_stale_callbacks_do_nothing(self):
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.5, 0.5),), pitch_bends=(bend(1.0, 0.5),)))
        await p.play_from(0.0)
        stale = list(self.clock.scheduled)
        p.pause()
        self.sink.events.clear()
        for _, cb in stale:
            cb(101.0)
        self.assertEqual(self.sink.events, [])

    async def test_superseded_play_from_is_noop(self):
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.0, 1.0),)), sink=SlowStartSink())
        await asyncio.gather(p.play_from(1.0), p.play_from(2.0))
        self.assertTrue(p.is_playing())
        self.assertAlmostEqual(p.get_position_seconds(), 2.0)
        self.assertEqual(self.clock.pending(), 0)

    async def test_pause_during_start_wins(self):
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.0, 1.0),)), sink=SlowStartSink())
        task = asyncio.create_task(p.play_from(0.0))
        await asyncio.sleep(0)
        p.pause()
        await task
        self.assertFalse(p.is_playing())
        self.assertEqual(self.clock.pending(), 0)

    async def test_dispose(self):
        player = RecordingAudioPlayer()
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.0, 1.0),)), audio_player=player)
        await p.play_from(0.0)
        self.advance(100.1)
        p.dispose()
        self.assertFalse(p.is_playing())
        self.assertTrue(player.disposed)
        self.assertEqual(self.sink.of_type("off"), [("off", 0, 60, 0)])
        await p.play_from(0.0)
        self.assertFalse(p.is_playing())

    async def test_bad_drum_channel_leaves_transport_untouched(self):
        p = self.make_player(
            Track(index=0, name="Keys", channel=0, notes=(note(60, 0.0, 1.0),), pitch_bends=(bend(0.5, 0.5),)),
            Track(index=1, name="Drums", channel=16, is_drum=True, notes=(note(36, 0.0, 0.1),)),
        )
        with self.assertRaises(ValueError):
            await p.play_from(0.0)
        self.assertFalse(p.is_playing())
        self.assertEqual(self.clock.pending(), 0)
        self.assertEqual(self.sink.of_type("master"), [])
        self.assertEqual(self.sink.of_type("on"), [])

    async def test_failed_scheduling_is_rolled_back(self):
        p = self.make_player(
            Track(
                index=0,
                name="Keys",
                channel=0,
                notes=(note(60, 0.0, 1.0),),
                channel_aftertouch=(ChannelAftertouchEvent(channel=16, tick=0, time=0.0, value=0.5),),
            )
        )
        with self.assertRaises(ValueError):
            await p.play_from(0.0)
        self.assertFalse(p.is_playing())
        self.assertEqual(self.clock.pending(), 0)
        self.assertEqual(self.sink.of_type("master")[-1], ("master", 0.0))

    def test_rejects_unknown_mode(self):
        with self.assertRaises(ValueError):
            self.make_player(audio_mode="tape")


class TestExternalAudio(PlayerTestCase):
    async def test_plays_audio_instead_of_notes(self):
        loader, player = FakeLoader(), RecordingAudioPlayer()
        p = self.make_player(
            Track(index=0, name="", channel=0, notes=(note(60, 0.0, 1.0),)),
            audio_mode=MODE_EXTERNAL,
            external_source=make_source(offset_ms=500),
            audio_loader=loader,
            audio_player=player,
        )
        await p.play_from(1.0)
        self.assertTrue(p.is_playing())
        self.assertEqual(self.clock.pending(), 0)
        self.assertEqual(len(player.starts), 1)
        _, at, offset = player.starts[0]
        self.assertEqual(at, 100.0)
        self.assertAlmostEqual(offset, 1.5)
        self.assertEqual(loader.calls, 1)

    async def test_negative_offset_delays_audio(self):
        player = RecordingAudioPlayer()
        p = self.make_player(
            audio_mode=MODE_EXTERNAL,
            external_source=make_source(offset_ms=-2000),
            audio_loader=FakeLoader(),
            audio_player=player,
        )
        await p.play_from(1.0)
        _, at, offset = player.starts[0]
        self.assertAlmostEqual(at, 101.0)
        self.assertEqual(offset, 0.0)

    async def test_decoded_audio_reused(self):
        loader = FakeLoader()
        p = self.make_player(audio_mode=MODE_EXTERNAL, external_source=make_source(), audio_loader=loader, audio_player=RecordingAudioPlayer())
        await p.play_from(0.0)
        p.pause()
        await p.play_from(0.5)
        self.assertEqual(loader.calls, 1)

    async def test_concurrent_loads_deduplicated(self):
        loader = FakeLoader(delay=0.01)
        p = self.make_player(audio_mode=MODE_EXTERNAL, external_source=make_source(), audio_loader=loader, audio_player=RecordingAudioPlayer())
        await asyncio.gather(p.play_from(0.0), p.play_from(1.0))
        self.assertEqual(loader.calls, 1)
        self.assertTrue(p.is_playing())
        self.assertAlmostEqual(p.get_position_seconds(), 1.0)

    async def test_load_failure(self):
        p = self.make_player(
            audio_mode=MODE_EXTERNAL,
            external_source=make_source(),
            audio_loader=FakeLoader(fail=True),
            audio_player=RecordingAudioPlayer(),
        )
        with self.assertRaises(AudioLoadError):
            await p.play_from(0.0)
        self.assertFalse(p.is_playing())

    async def test_missing_source(self):
        p = self.make_player(audio_mode=MODE_EXTERNAL, audio_loader=FakeLoader(), audio_player=RecordingAudioPlayer())
        with self.assertRaises(AudioLoadError):
            await p.play_from(0.0)

    async def test_mode_switch_pauses(self):
        loader = FakeLoader()
        p = self.make_player(Track(index=0, name="", channel=0, notes=(note(60, 0.0, 1.0),)), audio_loader=loader, audio_player=RecordingAudioPlayer())
        await p.play_from(0.0)
        p.set_audio_mode(MODE_MIDI)
        self.assertTrue(p.is_playing())
        p.set_audio_mode(MODE_EXTERNAL, make_source())
        self.assertFalse(p.is_playing())
        self.assertEqual(p.audio_mode, MODE_EXTERNAL)

    async def test_new_offset_pauses_but_keeps_audio(self):
        loader = FakeLoader()
        p = self.make_player(audio_mode=MODE_EXTERNAL, external_source=make_source(), audio_loader=loader, audio_player=RecordingAudioPlayer())
        await p.play_from(0.0)
        p.set_audio_mode(MODE_EXTERNAL, make_source(offset_ms=250))
        self.assertFalse(p.is_playing())
        await p.play_from(0.0)
        self.assertEqual(loader.calls, 1)

    async def test_new_file_reloads(self):
        loader = FakeLoader()
        p = self.make_player(audio_mode=MODE_EXTERNAL, external_source=make_source(), audio_loader=loader, audio_player=RecordingAudioPlayer())
        await p.play_from(0.0)
        p.set_audio_mode(MODE_EXTERNAL, make_source(name="other.wav"))
        await p.play_from(0.0)
        self.assertEqual(loader.calls, 2)

    async def test_switching_file_discards_in_flight_load(self):
        loader, player = FakeLoader(delay=0.01), RecordingAudioPlayer()
        p = self.make_player(audio_mode=MODE_EXTERNAL, external_source=make_source(), audio_loader=loader, audio_player=player)
        task = asyncio.create_task(p.play_from(0.0))
        while loader.calls == 0:
            await asyncio.sleep(0)
        p.set_audio_mode(MODE_EXTERNAL, make_source(name="b.wav"))
        await task
        self.assertFalse(p.is_playing())
        self.assertEqual(player.starts, [])

        await p.play_from(0.0)
        self.assertEqual(loader.names, ["take.wav", "b.wav"])
        self.assertEqual(len(player.starts), 1)
        self.assertTrue(p.is_playing())

    async def test_leaving_external_drops_audio(self):
        loader = FakeLoader()
        p = self.make_player(audio_mode=MODE_EXTERNAL, external_source=make_source(), audio_loader=loader, audio_player=RecordingAudioPlayer())
        await p.play_from(0.0)
        p.set_audio_mode(MODE_MIDI)
        p.set_audio_mode(MODE_EXTERNAL, make_source())
        await p.play_from(0.0)
        self.assertEqual(loader.calls, 2)

    async def test_note_callbacks_ignored_after_switch_to_external(self):
        p = self.make_player(
            Track(index=0, name="", channel=0, notes=(note(60, 0.5, 0.5),)),
            audio_loader=FakeLoader(),
            audio_player=RecordingAudioPlayer(),
        )
        await p.play_from(0.0)
        stale = list(self.clock.scheduled)
        p.set_audio_mode(MODE_EXTERNAL, make_source())
        self.sink.events.clear()
        for _, cb in stale:
            cb(100.5)
        self.assertEqual(self.sink.of_type("on"), [])


class TestExternalAudioSource(unittest.TestCase):
    def test_keys(self):
        a = make_source(offset_ms=0)
        b = make_source(offset_ms=100)
        self.assertEqual(a.file_key, b.file_key)
        self.assertNotEqual(a.load_key, b.load_key)

    def test_from_path(self):
        import tempfile
        from pathlib import Path

        with tempfile.TemporaryDirectory() as d:
            path = Path(d) / "mix.wav"
            path.write_bytes(b"\0" * 16)
            src = ExternalAudioSource.from_path(str(path), offset_ms=20)
            self.assertEqual(src.name, "mix.wav")
            self.assertEqual(src.size, 16)
            self.assertEqual(src.offset_ms, 20.0)

    def test_decoded_duration(self):
        self.assertEqual(DecodedAudio(samples=[[0.0]] * 480, sample_rate=48000).duration_seconds, 0.01)
        self.assertEqual(DecodedAudio(samples=[], sample_rate=0).duration_seconds, 0.0)
