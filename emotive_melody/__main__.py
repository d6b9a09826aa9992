"""Entry point wrapper for ``python -m emotive_melody``.

Forwards to :func:`emotive_melody.main` so ``python -m emotive_melody`` and the
installed ``emotive-melody`` console script behave identically.

Example
-------
::

    python -m emotive_melody --primary joy --secondary hope --intensity 2 \
        --temperature warm --movement stable --describe
"""

from . import main

if __name__ == "__main__":
    main()
