"""Entry point for `python -m clinical_digest`.

Delegates to `clinical_digest.pipeline`, which runs the document batch.
"""
import runpy
runpy.run_module("clinical_digest.pipeline", run_name="__main__", alter_sys=True)
