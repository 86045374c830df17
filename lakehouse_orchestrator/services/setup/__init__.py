"""Setup (provisioning) services.

This package contains orchestration helpers that *provision* the cloud
resources the lakehouse needs (project services, buckets, network, service
identity, notebook instance) before any workflow is triggered.
"""
