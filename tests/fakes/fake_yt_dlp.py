"""Stand-in for yt-dlp. Behaviour is driven by the query string of the URL and by env vars."""
import os
import sys
import time
import urllib.parse


def main(args):
    if '--version' in args:
        print('2024.08.06')
        return 0

    if '--dump-json' in args:
        error = os.environ.get('FAKE_YTDLP_ERROR')
        if error:
            print(f"ERROR: {error}", file=sys.stderr)
            return 1
        sys.stdout.write(os.environ.get('FAKE_YTDLP_DUMP', ''))
        return 0

    if '-g' in args:
        stream = os.environ.get('FAKE_YTDLP_STREAM')
        if not stream:
            print("ERROR: [youtube] Requested format is not available", file=sys.stderr)
            return 1
        print(stream)
        return 0

    url = args[-1]
    template = args[args.index('-o') + 1]
    options = dict(urllib.parse.parse_qsl(urllib.parse.urlparse(url).query))
    ext = options.get('ext', 'webm')
    sleep = float(options.get('sleep', 0))

    if 'fail' in options:
        print(f"ERROR: [youtube] {options['fail']}: Video unavailable. This video is private", file=sys.stderr)
        return 1

    partial = template.replace('%(ext)s', ext) + '.part'
    with open(partial, 'wb') as f:
        f.write(b'partial')
    for percent in (0.0, 25.0, 50.0, 75.0):
        print(f"[download]  {percent:5.1f}% of 3.00MiB at 1.20MiB/s ETA 00:03", flush=True)
        time.sleep(sleep / 4)
    print("[download] 100% of 3.00MiB in 00:00:02", flush=True)

    if 'nofile' in options:
        os.remove(partial)
        return 0
    os.replace(partial, template.replace('%(ext)s', ext))
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv[1:]))
