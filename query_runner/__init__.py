from query_runner.query_runner import QueryRunner, summarize

__all__ = ["QueryRunner", "summarize"]
