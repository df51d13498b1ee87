"""
Realtime Transport Establishment

Negotiates a WebRTC peer connection with the realtime endpoint: microphone
uplink, remote audio downlink and an ordered data channel for events.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable
from uuid import uuid4

import httpx
import structlog
from aiortc import (
    RTCConfiguration,
    RTCDataChannel,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError

from docvoice.config import Settings, settings as default_settings
from docvoice.core.errors import PlaybackRejectedError, TransportError
from docvoice.core.models import PlaybackBlocked
from .media import (
    AudioConstraints,
    AudioOutput,
    GatedAudioTrack,
    LocalMediaStream,
    MediaDevices,
    default_media_devices,
)

logger = structlog.get_logger()

ICE_CONNECTED_STATES = frozenset({"connected", "completed"})
ICE_LOST_STATES = frozenset({"disconnected", "failed", "closed"})


@dataclass
class TransportHandles:
    """
    Live media/data connection for one connection attempt.

    Handles are never reused: every reconnect closes the previous set and
    establishes a new one.
    """

    connection: RTCPeerConnection
    data_channel: RTCDataChannel | None = None
    uplink: GatedAudioTrack | None = None
    microphone: LocalMediaStream | None = None
    handle_id: str = field(default_factory=lambda: uuid4().hex)
    closed: bool = False

    _listeners: list[tuple[Any, str, Callable]] = field(default_factory=list, repr=False)
    _tasks: set[asyncio.Task] = field(default_factory=set, repr=False)

    @property
    def ice_connection_state(self) -> str:
        return self.connection.iceConnectionState

    @property
    def connection_state(self) -> str:
        return self.connection.connectionState

    @property
    def channel_open(self) -> bool:
        return self.data_channel is not None and self.data_channel.readyState == "open"

    def listen(self, emitter: Any, event: str, callback: Callable) -> None:
        """Register an event listener that is removed when the handles close."""
        emitter.on(event, callback)
        self._listeners.append((emitter, event, callback))

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def send(self, frame: str) -> bool:
        """Send a text frame on the data channel. Returns False if not sent."""
        if self.data_channel is None or self.data_channel.readyState != "open":
            logger.error(
                "Data channel not open",
                handle_id=self.handle_id,
                state=self.data_channel.readyState if self.data_channel else None,
            )
            return False
        try:
            self.data_channel.send(frame)
        except (InvalidStateError, ConnectionError, ValueError) as e:
            logger.error("Error sending message", handle_id=self.handle_id, error=str(e))
            return False
        return True

    def release_microphone(self) -> None:
        """Stop local capture tracks and detach them from the uplink."""
        if self.uplink is not None:
            self.uplink.detach()
        if self.microphone is not None:
            self.microphone.stop()
            self.microphone = None

    def attach_microphone(self, stream: LocalMediaStream) -> bool:
        """
        Route a microphone stream into the uplink.

        Returns True if a new sender had to be added to the connection.
        """
        self.microphone = stream
        tracks = stream.get_audio_tracks()
        if not tracks:
            return False

        if self.uplink is None:
            self.uplink = GatedAudioTrack()
        self.uplink.attach(tracks[0])

        has_sender = any(
            sender.track is self.uplink for sender in self.connection.getSenders()
        )
        if not has_sender:
            self.connection.addTrack(self.uplink)
            return True
        return False

    def detach_listeners(self) -> None:
        for emitter, event, callback in self._listeners:
            try:
                emitter.remove_listener(event, callback)
            except KeyError:
                pass
        self._listeners.clear()

    async def close(self) -> None:
        """Tear down everything owned by this connection attempt."""
        if self.closed:
            return
        self.closed = True

        self.detach_listeners()
        for task in list(self._tasks):
            task.cancel()

        self.release_microphone()
        if self.uplink is not None:
            self.uplink.stop()
        for sender in self.connection.getSenders():
            if sender.track is not None:
                sender.track.stop()

        if self.data_channel is not None:
            self.data_channel.close()
        await self.connection.close()

        logger.debug("Transport handles closed", handle_id=self.handle_id)


# ══════════════════════════════════════════════════════════════
# Bounded Waits
# ══════════════════════════════════════════════════════════════


async def wait_for_ice_gathering(connection: RTCPeerConnection, timeout: float) -> None:
    """Wait for candidate gathering to complete, or give up after timeout."""
    if connection.iceGatheringState == "complete":
        return

    done = asyncio.get_running_loop().create_future()

    def check_state() -> None:
        if connection.iceGatheringState == "complete" and not done.done():
            done.set_result(None)

    connection.on("icegatheringstatechange", check_state)
    try:
        await asyncio.wait_for(done, timeout)
    except asyncio.TimeoutError:
        logger.info("ICE gathering timeout, proceeding with available candidates", timeout=timeout)
    finally:
        connection.remove_listener("icegatheringstatechange", check_state)


async def wait_for_connection(
    connection: RTCPeerConnection,
    channel: RTCDataChannel,
    timeout: float,
) -> None:
    """
    Wait until ICE is connected and the data channel is open.

    An explicit ICE failure raises TransportError. Running out of time only
    logs a warning: some peers finish connecting shortly afterwards.
    """
    done = asyncio.get_running_loop().create_future()

    def check_state() -> None:
        if done.done():
            return
        state = connection.iceConnectionState
        if state in ICE_CONNECTED_STATES and channel.readyState == "open":
            done.set_result(None)
        elif state in ICE_LOST_STATES:
            done.set_exception(TransportError("connection", f"ICE connection failed: {state}"))

    connection.on("iceconnectionstatechange", check_state)
    channel.on("open", check_state)
    check_state()
    try:
        await asyncio.wait_for(done, timeout)
    except asyncio.TimeoutError:
        logger.warning(
            "Connection establishment timeout, continuing",
            timeout=timeout,
            ice_state=connection.iceConnectionState,
            channel_state=channel.readyState,
        )
    finally:
        connection.remove_listener("iceconnectionstatechange", check_state)
        channel.remove_listener("open", check_state)


# ══════════════════════════════════════════════════════════════
# Establisher
# ══════════════════════════════════════════════════════════════


class TransportEstablisher:
    """
    Builds a TransportHandles set from an ephemeral credential.

    Usage:
        establisher = TransportEstablisher()
        handles = await establisher.establish(credential, output)
    """

    def __init__(
        self,
        config: Settings | None = None,
        media_devices: MediaDevices | None = None,
        http_client: httpx.AsyncClient | None = None,
        peer_factory: Callable[[RTCConfiguration], RTCPeerConnection] | None = None,
    ) -> None:
        self.config = config or default_settings
        self.media_devices = media_devices or default_media_devices(self.config)
        self._client = http_client
        self._owns_client = http_client is None
        self._peer_factory = peer_factory or (
            lambda configuration: RTCPeerConnection(configuration=configuration)
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.connection_timeout_seconds)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=list(self.config.ice_servers))])

    def audio_constraints(self) -> AudioConstraints:
        return AudioConstraints(sample_rate=self.config.microphone_sample_rate)

    async def acquire_microphone(self) -> LocalMediaStream:
        """Probe for permission, release, then capture with real constraints."""
        probe = await self.media_devices.get_user_media()
        probe.stop()
        logger.debug("Microphone permission granted")
        return await self.media_devices.get_user_media(self.audio_constraints())

    async def establish(
        self,
        credential: str,
        output: AudioOutput,
        on_playback_blocked: Callable[[PlaybackBlocked], Any] | None = None,
    ) -> TransportHandles:
        """
        Negotiate a new connection.

        Raises:
            MicrophonePermissionError: microphone could not be acquired
            TransportError: offer, SDP exchange or connection failure
        """
        stream = await self.acquire_microphone()

        connection = self._peer_factory(self.rtc_configuration())
        handles = TransportHandles(connection=connection)
        try:
            self._route_remote_audio(handles, output, on_playback_blocked)

            handles.data_channel = connection.createDataChannel(
                self.config.data_channel_label, ordered=True
            )
            handles.attach_microphone(stream)
            self._prefer_opus(connection)

            try:
                offer = await connection.createOffer()
                await connection.setLocalDescription(offer)
            except (ValueError, InvalidStateError) as e:
                raise TransportError("offer", str(e)) from e

            await wait_for_ice_gathering(connection, self.config.ice_gathering_timeout_seconds)

            local = connection.localDescription
            if local is None or not local.sdp:
                raise TransportError("offer", "Failed to create local description")

            answer_sdp = await self.exchange_sdp(credential, local.sdp)

            try:
                await connection.setRemoteDescription(
                    RTCSessionDescription(sdp=answer_sdp, type="answer")
                )
            except (ValueError, InvalidStateError) as e:
                raise TransportError("remote_description", str(e)) from e

            await wait_for_connection(
                connection, handles.data_channel, self.config.connection_timeout_seconds
            )
        except BaseException:
            stream.stop()
            await handles.close()
            raise

        logger.info("WebRTC connection established", handle_id=handles.handle_id)
        return handles

    async def exchange_sdp(self, credential: str, offer_sdp: str) -> str:
        """POST the local offer and return the remote answer SDP."""
        client = await self._get_client()
        try:
            response = await client.post(
                self.config.realtime_url,
                params={"model": self.config.realtime_model},
                headers={
                    "Authorization": f"Bearer {credential}",
                    "Content-Type": "application/sdp",
                },
                content=offer_sdp,
            )
        except httpx.HTTPError as e:
            raise TransportError("sdp_exchange", str(e)) from e

        if response.status_code >= 400:
            raise TransportError(
                "sdp_exchange",
                f"Failed to establish Realtime connection: {response.text}",
                retryable=response.status_code not in (401, 403),
            )

        logger.debug("Received SDP answer", status=response.status_code)
        return response.text

    def _prefer_opus(self, connection: RTCPeerConnection) -> None:
        capabilities = RTCRtpSender.getCapabilities("audio")
        opus = [c for c in capabilities.codecs if c.mimeType.lower() == "audio/opus"]
        if not opus:
            return
        for transceiver in connection.getTransceivers():
            if transceiver.kind == "audio":
                try:
                    transceiver.setCodecPreferences(opus)
                except ValueError as e:
                    logger.debug("Codec preferences not supported", error=str(e))

    def _route_remote_audio(
        self,
        handles: TransportHandles,
        output: AudioOutput,
        on_playback_blocked: Callable[[PlaybackBlocked], Any] | None,
    ) -> None:
        routed = False

        def on_track(track) -> None:
            nonlocal routed
            if track.kind != "audio" or routed:
                return
            routed = True
            logger.info("Remote audio track received", handle_id=handles.handle_id)
            handles.spawn(self._start_playback(track, output, on_playback_blocked))

        handles.listen(handles.connection, "track", on_track)

    async def _start_playback(
        self,
        track,
        output: AudioOutput,
        on_playback_blocked: Callable[[PlaybackBlocked], Any] | None,
    ) -> None:
        try:
            await output.play(track)
            return
        except PlaybackRejectedError as e:
            logger.warning("Audio playback failed, retrying", error=str(e))

        await asyncio.sleep(self.config.playback_retry_delay_seconds)
        try:
            await output.play(track)
            logger.info("Audio playback started after retry")
        except PlaybackRejectedError as e:
            logger.warning("Audio playback blocked", error=str(e))
            if on_playback_blocked is not None:
                on_playback_blocked(PlaybackBlocked(reason=str(e)))


__all__ = [
    "TransportHandles",
    "TransportEstablisher",
    "wait_for_ice_gathering",
    "wait_for_connection",
    "ICE_CONNECTED_STATES",
    "ICE_LOST_STATES",
]
