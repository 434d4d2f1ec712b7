"""Entry point wrapper for ``python -m melody_composer``.

Execution is forwarded to :func:`melody_composer.main` so ``python -m`` and
the installed ``melody-composer`` console script behave identically.

Example
-------
::

    python -m melody_composer --melody "E4@0 G4@1 C5@4 B4@8" \
        --bars 4 --mode dorian --output song.mid
"""

from . import main

if __name__ == "__main__":
    main()
