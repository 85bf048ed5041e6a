"""AnalysisFlow - multi-agent stock analysis workflow coordinator."""
