# Workers: one process per pipeline stage, sharing state through the DB and the broker.
# Run from backend/ with:
#   python -m workers.crawler
#   python -m workers.extractor
#   python -m workers.generator
#   python -m workers.validator
#   python -m workers.publisher      (single instance)
#   python -m workers.resolver
#   python -m workers.dispute_agent
#   python -m workers.scheduler
