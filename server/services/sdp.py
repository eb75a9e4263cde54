# services/sdp.py
"""
Session description text helpers.

`normalize` biases audio negotiation toward low-latency Opus: the Opus payload
type is moved to the front of the `m=audio` line and given a fixed fmtp
parameter set. It is a narrow line-based rewrite, not an SDP parser.
"""
import logging
import re
from typing import List, Tuple

from constants import PREFERRED_CODEC, PREFERRED_FMTP, PREFERRED_PTIME

logger = logging.getLogger(__name__)

_RTPMAP_RE = re.compile(r"^a=rtpmap:(\d+)\s+" + re.escape(PREFERRED_CODEC) + r"$", re.IGNORECASE)


def normalize(sdp):
    """
    Prefer the low-latency Opus configuration in a session description.

    Never raises: any failure returns the input unchanged.

    Args:
        sdp (str): Session description text.

    Returns:
        str: Rewritten description, or the original text when it has no audio
             section or no Opus payload type.
    """
    if not isinstance(sdp, str):
        return sdp
    try:
        return _prefer_opus(sdp)
    except Exception as e:
        logger.warning(f"SDP normalization failed, relaying unchanged: {e}")
        return sdp


def _prefer_opus(sdp: str) -> str:
    eol = "\r\n" if "\r\n" in sdp else "\n"
    lines = sdp.split(eol)

    start = next((i for i, line in enumerate(lines) if line.startswith("m=audio ")), None)
    if start is None:
        return sdp
    end = next((i for i in range(start + 1, len(lines)) if lines[i].startswith("m=")), len(lines))

    rtpmap_idx, pt = None, None
    for i in range(start + 1, end):
        match = _RTPMAP_RE.match(lines[i].strip())
        if match:
            rtpmap_idx, pt = i, match.group(1)
            break
    if pt is None:
        return sdp

    # m=audio <port> <proto> <fmt> ...
    parts = lines[start].split(" ")
    if len(parts) < 4 or pt not in parts[3:]:
        return sdp
    lines[start] = " ".join(parts[:3] + [pt] + [p for p in parts[3:] if p != pt])

    prefix = f"a=fmtp:{pt} "
    fmtp_idx = next((i for i in range(start + 1, end) if lines[i].startswith(prefix)), None)
    if fmtp_idx is None:
        lines.insert(rtpmap_idx + 1, prefix + PREFERRED_FMTP)
    else:
        params = lines[fmtp_idx][len(prefix):].strip()
        keys = {p.split("=", 1)[0].strip().lower() for p in params.split(";") if p.strip()}
        if "ptime" not in keys:
            extra = f"ptime={PREFERRED_PTIME}"
            lines[fmtp_idx] = prefix + (f"{params};{extra}" if params else extra)

    return eol.join(lines)


def split_candidates(sdp: str) -> Tuple[str, List[dict]]:
    """
    Separate ICE candidates from a session description for trickle signaling.

    Args:
        sdp (str): Complete local description with gathered candidates.

    Returns:
        tuple:
            - description text without `a=candidate` / `a=end-of-candidates` lines
            - candidate dicts shaped like a browser's RTCIceCandidate JSON
    """
    eol = "\r\n" if "\r\n" in sdp else "\n"
    lines = sdp.split(eol)

    # a=mid may follow the candidates inside a media section
    mids, index = {}, -1
    for line in lines:
        if line.startswith("m="):
            index += 1
        elif line.startswith("a=mid:"):
            mids[index] = line[len("a=mid:"):].strip()

    kept, candidates = [], []
    index = -1
    for line in lines:
        if line.startswith("m="):
            index += 1
        if line.startswith("a=candidate:"):
            candidates.append({
                "candidate": line[len("a="):].strip(),
                "sdpMid": mids.get(index),
                "sdpMLineIndex": index,
            })
            continue
        if line.startswith("a=end-of-candidates"):
            continue
        kept.append(line)
    return eol.join(kept), candidates
