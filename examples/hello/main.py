#!/usr/bin/env python3
# hello - demo program for python-zipsfx
#
# Build with:  python-zipsfx build -C -D examples/hello
import sys

from lib.greeting import make_message


def main() -> None:
    """Run the demo app."""

    name: str = sys.argv[1] if len(sys.argv) > 1 else "world"
    print(make_message(name))

    data = globals().get("DATA")
    if data is not None:
        for line in data:
            print(f"data: {line.rstrip()}")


if __name__ == "__main__":
    main()

__END__
first line of trailing data
second line of trailing data
