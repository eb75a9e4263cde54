# services/selftest.py
"""
End-to-end self-test of the signaling relay.

Two synthetic peers connect to the public WebSocket endpoint exactly like a
browser would, join a fresh room, negotiate an audio call through `signal`
messages (trickle ICE included) and exchange a synthetic tone. The run
succeeds when both sides report received media.

Usage:
    report = await run_self_test(timeout_ms=15000, url="ws://127.0.0.1:8765")
    report["ok"], report["perDirectionStats"]
"""
import asyncio
import fractions
import json
import logging
import math
import os
import secrets
import time
from array import array

import websockets
from aiortc import RTCConfiguration, RTCPeerConnection, RTCSessionDescription
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack
from aiortc.sdp import candidate_from_sdp
from av import AudioFrame

from constants import (
    ROOM_ID_MAX_LENGTH, SELFTEST_DEFAULT_TIMEOUT_MS, SELFTEST_ROOM_PREFIX,
    SELFTEST_SETTLE_SECONDS, TONE_FRAME_MS, TONE_FREQUENCY, TONE_SAMPLE_RATE,
)
from services.sdp import normalize, split_candidates

logger = logging.getLogger(__name__)


def new_selftest_room_id() -> str:
    """Random room id that fits the room-id cap, e.g. ST3FA9C01B2E."""
    size = (ROOM_ID_MAX_LENGTH - len(SELFTEST_ROOM_PREFIX)) // 2
    return SELFTEST_ROOM_PREFIX + secrets.token_hex(size).upper()


def default_signaling_url() -> str:
    return f"ws://127.0.0.1:{int(os.getenv('WEBSOCKET_PORT', 8765))}"


class ToneTrack(MediaStreamTrack):
    """
    Audio track producing a continuous mono sine tone in real time.
    """

    kind = "audio"

    def __init__(self, frequency: int = TONE_FREQUENCY, sample_rate: int = TONE_SAMPLE_RATE,
                 frame_ms: int = TONE_FRAME_MS):
        super().__init__()
        self.sample_rate = sample_rate
        self.samples = sample_rate * frame_ms // 1000
        self.time_base = fractions.Fraction(1, sample_rate)
        amplitude = 0.3 * 32767
        self._pcm = array("h", (
            int(amplitude * math.sin(2 * math.pi * frequency * n / sample_rate))
            for n in range(self.samples)
        )).tobytes()
        self._start = None
        self._timestamp = 0

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError

        if self._start is None:
            self._start = time.time()
        else:
            self._timestamp += self.samples
            wait = self._start + (self._timestamp / self.sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)

        frame = AudioFrame(format="s16", layout="mono", samples=self.samples)
        frame.planes[0].update(self._pcm)
        frame.sample_rate = self.sample_rate
        frame.time_base = self.time_base
        frame.pts = self._timestamp
        return frame


class SyntheticPeer:
    """
    A headless client speaking the browser protocol: one WebSocket to the relay
    and one RTCPeerConnection sending a ToneTrack.

    Attributes:
        label (str): Name used in logs and diagnostics.
        id (str): Connection id assigned by the relay.
        media_started (asyncio.Event): Set on the first decoded inbound frame.
        failed (asyncio.Event): Set when signaling or the peer connection fails.
        error (Exception): Cause of the failure, if any.
    """

    def __init__(self, label: str, url: str, ice_servers=None):
        self.label = label
        self.url = url
        self.id = None
        self.room_id = None
        self.ws = None
        self.pc = RTCPeerConnection(RTCConfiguration(iceServers=list(ice_servers or [])))
        self.frames_received = 0
        self.media_started = asyncio.Event()
        self.failed = asyncio.Event()
        self.error = None

        self._track = ToneTrack()
        self._welcomed = asyncio.Event()
        self._joined = asyncio.Event()
        self._pending_candidates = []
        self._tasks = []

        self.pc.on("track", self._on_track)
        self.pc.on("connectionstatechange", self._on_pc_state)

    # ----- Signaling channel -----

    async def connect(self) -> None:
        """Open the WebSocket and wait for the relay to assign a connection id."""
        self.ws = await websockets.connect(self.url)
        self._tasks.append(asyncio.ensure_future(self._read_loop()))
        await self._until(self._welcomed)
        logger.info(f"Peer {self.label} connected as {self.id}")

    async def join(self, room_id: str) -> None:
        await self.send("join-room", {"roomId": room_id, "username": f"selftest-{self.label}",
                                      "instrument": "synth"})
        await self._until(self._joined)

    async def send(self, msg_type: str, payload: dict) -> None:
        await self.ws.send(json.dumps({"msg_type": msg_type, "payload": payload}))

    async def _until(self, event: asyncio.Event) -> None:
        """Wait for `event`, aborting if the peer fails first."""
        waiter = asyncio.ensure_future(event.wait())
        failure = asyncio.ensure_future(self.failed.wait())
        try:
            await asyncio.wait([waiter, failure], return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            failure.cancel()
        if not event.is_set():
            raise self.error or ConnectionError(f"peer {self.label} failed")

    async def _read_loop(self) -> None:
        try:
            async for raw in self.ws:
                message = json.loads(raw)
                await self._on_message(message.get("msg_type"), message.get("payload") or {})
        except websockets.exceptions.ConnectionClosed:
            pass
        except Exception as e:
            logger.warning(f"Peer {self.label} signaling failed: {e}")
            self._fail(e)
            return
        if not self.media_started.is_set():
            self._fail(ConnectionError(f"peer {self.label} signaling channel closed"))

    async def _on_message(self, msg_type: str, payload: dict) -> None:
        if msg_type == "welcome":
            self.id = payload.get("id")
            self._welcomed.set()
        elif msg_type == "joined-room":
            self.room_id = payload.get("roomId")
            self._joined.set()
        elif msg_type == "signal":
            await self._on_signal(payload.get("from"), payload.get("data") or {})

    # ----- Negotiation -----

    async def call(self, target_id: str) -> None:
        """Create an offer and send it, followed by trickled candidates, to `target_id`."""
        self.pc.addTrack(self._track)
        offer = await self.pc.createOffer()
        await self.pc.setLocalDescription(offer)
        await self._send_description(target_id)

    async def _send_description(self, to: str) -> None:
        description = self.pc.localDescription
        sdp, candidates = split_candidates(normalize(description.sdp))
        await self.send("signal", {"to": to, "roomId": self.room_id,
                                   "data": {"sdp": {"type": description.type, "sdp": sdp}}})
        for candidate in candidates:
            await self.send("signal", {"to": to, "roomId": self.room_id,
                                       "data": {"candidate": candidate}})

    async def _on_signal(self, sender: str, data: dict) -> None:
        description = data.get("sdp")
        if isinstance(description, dict):
            await self.pc.setRemoteDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"]))
            pending, self._pending_candidates = self._pending_candidates, []
            for candidate in pending:
                await self._add_candidate(candidate)

            if description["type"] == "offer":
                self.pc.addTrack(self._track)
                answer = await self.pc.createAnswer()
                await self.pc.setLocalDescription(answer)
                await self._send_description(sender)
            return

        candidate = data.get("candidate")
        if not candidate or not candidate.get("candidate"):
            return  # end-of-candidates marker
        if self.pc.remoteDescription is None:
            self._pending_candidates.append(candidate)
        else:
            await self._add_candidate(candidate)

    async def _add_candidate(self, candidate: dict) -> None:
        line = candidate["candidate"]
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        ice = candidate_from_sdp(line)
        ice.sdpMid = candidate.get("sdpMid")
        ice.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice)

    # ----- Media -----

    def _on_track(self, track) -> None:
        logger.info(f"Peer {self.label} receiving {track.kind}")
        self._tasks.append(asyncio.ensure_future(self._consume(track)))

    async def _consume(self, track) -> None:
        try:
            while True:
                await track.recv()
                self.frames_received += 1
                self.media_started.set()
        except MediaStreamError:
            logger.debug(f"Inbound track of peer {self.label} ended")

    def _on_pc_state(self) -> None:
        state = self.pc.connectionState
        logger.info(f"Peer {self.label} connection state: {state}")
        if state == "failed":
            self._fail(ConnectionError(f"peer {self.label} connection failed"))

    def _fail(self, error: Exception) -> None:
        if self.error is None:
            self.error = error
        self.failed.set()

    async def inbound_stats(self) -> dict:
        """
        Transport-level statistics for media received by this peer.

        Returns:
            dict: bytesReceived, packetsReceived, packetsLost, jitter (RTP
                  timestamp units), roundTripTime (seconds) and framesReceived.
        """
        stats = {
            "bytesReceived": 0,
            "packetsReceived": 0,
            "packetsLost": 0,
            "jitter": None,
            "roundTripTime": None,
            "framesReceived": self.frames_received,
        }
        report = await self.pc.getStats()
        for entry in report.values():
            if entry.type == "inbound-rtp":
                stats["packetsReceived"] += getattr(entry, "packetsReceived", 0) or 0
                stats["packetsLost"] += getattr(entry, "packetsLost", 0) or 0
                stats["jitter"] = getattr(entry, "jitter", None)
            elif entry.type == "transport":
                stats["bytesReceived"] += getattr(entry, "bytesReceived", 0) or 0
            elif entry.type == "remote-inbound-rtp":
                stats["roundTripTime"] = getattr(entry, "roundTripTime", None)
        return stats

    def describe(self) -> str:
        return (f"{self.label}: id={self.id}, ice={self.pc.iceConnectionState}, "
                f"connection={self.pc.connectionState}, frames={self.frames_received}")

    async def close(self) -> None:
        """Release the peer connection, the tone track and the WebSocket."""
        for task in self._tasks:
            task.cancel()
        self._track.stop()
        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"Closing peer connection {self.label} failed: {e}")
        if self.ws is not None:
            try:
                await self.ws.close()
            except Exception as e:
                logger.warning(f"Closing signaling socket {self.label} failed: {e}")


async def _wait_for_media(peers) -> None:
    """Resolve once every peer has inbound media; raise on the first peer failure."""
    media = asyncio.ensure_future(asyncio.gather(*(p.media_started.wait() for p in peers)))
    failures = [asyncio.ensure_future(p.failed.wait()) for p in peers]
    try:
        done, _ = await asyncio.wait([media, *failures], return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (media, *failures):
            if not task.done():
                task.cancel()
    if media not in done:
        failed = next(p for p in peers if p.failed.is_set())
        raise failed.error or ConnectionError(f"peer {failed.label} failed")


async def _negotiate(caller: SyntheticPeer, callee: SyntheticPeer, room_id: str) -> None:
    await asyncio.gather(caller.connect(), callee.connect())
    await caller.join(room_id)
    await callee.join(room_id)
    await caller.call(callee.id)
    await _wait_for_media((caller, callee))


async def run_self_test(timeout_ms: int = SELFTEST_DEFAULT_TIMEOUT_MS, url: str = None,
                        ice_servers=None) -> dict:
    """
    Drive two synthetic peers through the relay and verify media flows both ways.

    Never raises: timeouts and transport errors produce ok=False with a note.
    Both peers are always closed before returning.

    Args:
        timeout_ms (int): Bound on connecting, negotiating and waiting for media.
        url (str, optional): Signaling WebSocket URL. Defaults to the local server.
        ice_servers (list, optional): aiortc RTCIceServer entries. Defaults to none (host candidates).

    Returns:
        dict: {"ok", "roomId", "perDirectionStats", "diagnosticNote"}
    """
    room_id = new_selftest_room_id()
    report = {"ok": False, "roomId": room_id, "perDirectionStats": {}, "diagnosticNote": ""}
    url = url or default_signaling_url()
    logger.info(f"Self-test starting in room {room_id} against {url}")

    caller = callee = None
    try:
        caller = SyntheticPeer("A", url, ice_servers)
        callee = SyntheticPeer("B", url, ice_servers)
        await asyncio.wait_for(_negotiate(caller, callee, room_id), timeout=timeout_ms / 1000)
        await asyncio.sleep(SELFTEST_SETTLE_SECONDS)

        stats = {
            "A->B": await callee.inbound_stats(),
            "B->A": await caller.inbound_stats(),
        }
        report["perDirectionStats"] = stats
        silent = [d for d, s in stats.items() if s["bytesReceived"] <= 0 or s["packetsReceived"] <= 0]
        report["ok"] = not silent
        report["diagnosticNote"] = (
            "media received in both directions" if not silent
            else f"no media counted for {', '.join(silent)}")
    except asyncio.TimeoutError:
        states = "; ".join(p.describe() for p in (caller, callee) if p is not None)
        report["diagnosticNote"] = f"timed out after {timeout_ms} ms waiting for media ({states})"
    except Exception as e:
        report["diagnosticNote"] = f"{type(e).__name__}: {e}"
    finally:
        await asyncio.gather(*(p.close() for p in (caller, callee) if p is not None))

    logger.info(f"Self-test {room_id} finished: ok={report['ok']} ({report['diagnosticNote']})")
    return report
