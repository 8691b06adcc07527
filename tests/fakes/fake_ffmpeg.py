"""Stand-in for ffmpeg. Writes its arguments and tags as JSON into the output file."""
import json
import os
import sys
import time


def main(args):
    if '-version' in args:
        print('ffmpeg version 6.1-fake Copyright (c) 2000-2023 the FFmpeg developers')
        return 0

    log = os.environ.get('FAKE_FFMPEG_LOG')
    if log:
        with open(log, 'a') as f:
            f.write(json.dumps(args) + '\n')

    if os.environ.get('FAKE_FFMPEG_FAIL'):
        print('[mp3 @ 0x55d0c8a0] Invalid data found when processing input', file=sys.stderr)
        return 1

    output = args[-1]
    if 'image2' in args:
        with open(args[args.index('-i') + 1], 'rb') as f:
            content = f.read()
        if b'ART' not in content:
            print('Output file #0 does not contain any stream', file=sys.stderr)
            return 1
        with open(output, 'wb') as f:
            f.write(b'\xff\xd8\xff\xe0fakejpeg')
        return 0

    if '-vframes' in args:
        position = args[args.index('-ss') + 1]
        if position in os.environ.get('FAKE_FFMPEG_BAD_FRAMES', '').split(','):
            print(f"{args[args.index('-i') + 1]}: Server returned 403 Forbidden", file=sys.stderr)
            return 1
        with open(output, 'wb') as f:
            f.write(b'\xff\xd8frame@' + position.encode())
        return 0

    print('size=     256kB time=00:00:01.00 bitrate= 128.0kbits/s speed=2x', file=sys.stderr, flush=True)
    time.sleep(float(os.environ.get('FAKE_FFMPEG_SLEEP', '0')))
    tags = {}
    for index, arg in enumerate(args):
        if arg == '-metadata':
            key, _, value = args[index + 1].partition('=')
            tags[key] = value
    with open(output, 'w') as f:
        json.dump({'tags': tags, 'args': args}, f)
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
