"""Allow running EmbedTV with `python -m embedtv`."""

from embedtv.main import main

if __name__ == "__main__":
    main()
