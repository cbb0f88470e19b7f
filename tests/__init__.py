"""
Test Suite for the Workflow Watcher

One module per component:
- workflow model, log reader, analyzer
- intervention generator, queue manager
- compliance monitor, remote analysis
- supervisor and configuration
"""
