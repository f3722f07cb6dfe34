"""CLI shim -- delegates to paperburner.cli.main().

Usage:
    python paperburner_cli.py ./papers
    python paperburner_cli.py paper.pdf --translation-model deepseek
"""

from paperburner.cli import main

if __name__ == "__main__":
    main()
