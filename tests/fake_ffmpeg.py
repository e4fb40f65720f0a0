"""Stand-in for ffmpeg used by the test-suite.

Accepts the real argv; the ``-i`` value picks the behaviour:

    fake://ok          write the playlist, report progress until interrupted
    fake://crash       as ok, then log an error and exit 1 after ``after`` seconds
    fake://hang        write the playlist, report one frame, then go silent
    fake://quit        as ok, then exit 0 after ``after`` seconds (source ended)
    fake://noplaylist  log a connection error and exit 1 without any output
"""
import signal
import sys
import time
from pathlib import Path
from urllib.parse import parse_qs, urlsplit


def log(line):
    sys.stderr.write(line + "\n")
    sys.stderr.flush()


def write_playlist(path, seq):
    seg = path.parent / f"segment_{seq:03d}.ts"
    seg.write_bytes(b"\x47" * 188)
    path.write_text(
        "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:6\n"
        f"#EXT-X-MEDIA-SEQUENCE:{seq}\n#EXTINF:6.0,\n{seg.name}\n"
    )


def main(argv):
    source = argv[argv.index("-i") + 1]
    playlist = Path(argv[-1])
    parts = urlsplit(source)
    mode = parts.netloc or parts.path.strip("/")
    after = float(parse_qs(parts.query).get("after", ["0.3"])[0])

    log("ffmpeg version fake Copyright (c) the test-suite")
    log(f"Input #0, rtsp, from '{source}':")

    if mode == "noplaylist":
        log("[rtsp @ 0x0] method DESCRIBE failed: 404 Not Found")
        log(f"{source}: Server returned 404 Not Found (error opening input)")
        return 1

    write_playlist(playlist, 0)
    if mode == "hang":
        log("frame=1\nprogress=continue")
        while True:
            time.sleep(1)

    started = time.monotonic()
    frame = 0
    while True:
        frame += 1
        sys.stderr.write(f"frame={frame}\nfps=25.0\nprogress=continue\n")
        sys.stderr.flush()
        if frame % 10 == 0:
            write_playlist(playlist, frame // 10)
        if mode in ("crash", "quit") and time.monotonic() - started >= after:
            if mode == "crash":
                log("[rtsp @ 0x0] Error: connection reset by peer")
                return 1
            log("progress=end")
            return 0
        time.sleep(0.02)


if __name__ == "__main__":
    signal.signal(signal.SIGTERM, lambda *_: sys.exit(0))
    try:
        sys.exit(main(sys.argv[1:]))
    except KeyboardInterrupt:
        log("Exiting normally, received signal 2.")
        sys.exit(0)
