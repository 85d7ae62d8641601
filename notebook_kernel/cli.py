"""
Command-line entry point: run every code cell of a notebook through the
interpreter and write the outputs back.

    notebook-kernel analysis.ipynb --output executed.ipynb --timeout 600
"""

import sys
import asyncio
import argparse
from pathlib import Path
from typing import Optional

import nbformat
import structlog

from .config import settings
from .errors import KernelError
from .kernel import NotebookKernel
from .observability import configure_logging
from .protocols import RecordedExecution

logger = structlog.get_logger(__name__)


async def run_notebook(
    notebook_path: str,
    output_path: Optional[str] = None,
    timeout: Optional[float] = None,
    stop_on_error: bool = False,
    kernel: Optional[NotebookKernel] = None,
):
    """
    Execute the code cells of ``notebook_path`` in order.

    Each cell's outputs and execution count are replaced with the results
    of this run. The notebook is written to ``output_path`` (in place if
    omitted) and returned.
    """
    nb = nbformat.read(notebook_path, as_version=4)
    owns_kernel = kernel is None
    if kernel is None:
        kernel = NotebookKernel(notebook_path)

    failures = 0
    try:
        for index, cell in enumerate(nb.cells):
            if cell.cell_type != "code" or not cell.source.strip():
                continue

            execution = RecordedExecution(label=f"{notebook_path}#{index}")
            await kernel.run_cell(cell.source, execution, timeout=timeout)
            cell.outputs = execution.outputs
            cell.execution_count = execution.execution_order

            if not execution.success:
                failures += 1
                logger.warning(f"Cell {index} failed")
                if stop_on_error:
                    break
    finally:
        if owns_kernel:
            await kernel.dispose()

    nbformat.write(nb, output_path or notebook_path)
    logger.info(f"Executed {notebook_path} ({failures} failed cell(s))")
    return nb


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Run a notebook's code cells in an interpreter process."
    )
    parser.add_argument("notebook", type=Path, help="Notebook (.ipynb) to execute")
    parser.add_argument(
        "--output", type=Path, default=None,
        help="Where to write the executed notebook (default: in place)",
    )
    parser.add_argument(
        "--timeout", type=float, default=None,
        help="Per-cell timeout in seconds (default: none)",
    )
    parser.add_argument(
        "--stop-on-error", action="store_true",
        help="Stop at the first failing cell",
    )
    parser.add_argument(
        "--log-level", default=settings.LOG_LEVEL,
        choices=["debug", "info", "warning", "error", "critical"],
    )
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    try:
        asyncio.run(
            run_notebook(
                str(args.notebook),
                str(args.output) if args.output else None,
                timeout=args.timeout,
                stop_on_error=args.stop_on_error,
            )
        )
    except asyncio.TimeoutError:
        logger.error(f"A cell did not finish within {args.timeout}s")
        return 1
    except KernelError as e:
        logger.error(f"Kernel error: {e}")
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
