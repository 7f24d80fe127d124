"""SDP offer generation for outbound INVITEs."""

from __future__ import annotations

# RFC 3551 §6: static payload type 0 is PCMU; 101 is the customary dynamic
# type for RFC 4733 telephone-event
PCMU_PAYLOAD = 0
DTMF_PAYLOAD = 101
DEFAULT_RTP_PORT = 20000


def build_sdp_offer(local_ip: str, rtp_port: int = DEFAULT_RTP_PORT) -> str:
    """Build an SDP offer for PCMU audio plus DTMF events.

    No media is ever sent; the offer exists so the far end accepts the call.
    """
    lines = [
        "v=0",
        f"o=http2sip 0 0 IN IP4 {local_ip}",
        "s=http2sip",
        f"c=IN IP4 {local_ip}",
        "t=0 0",
        f"m=audio {rtp_port} RTP/AVP {PCMU_PAYLOAD} {DTMF_PAYLOAD}",
        f"a=rtpmap:{PCMU_PAYLOAD} PCMU/8000",
        f"a=rtpmap:{DTMF_PAYLOAD} telephone-event/8000",
        f"a=fmtp:{DTMF_PAYLOAD} 0-16",
        "a=ptime:20",
        "a=sendrecv",
        "",
    ]
    return "\r\n".join(lines)
