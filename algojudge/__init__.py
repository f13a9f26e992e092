"""AlgoJudge: sandboxed judging of submissions and contest ranking."""

__version__ = "0.1.0"
