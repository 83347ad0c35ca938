import logging

import grpc

from . import rpc
from .config import RunConfig
from .errors import PipelineError

LOG = logging.getLogger("client")


class FlowClient:
    """Submits TF-IDF runs to a master over gRPC."""

    def __init__(self, master_address: str):
        self.channel = grpc.insecure_channel(master_address)
        self._run_flow = rpc.stub(self.channel, rpc.MASTER_SERVICE, "RunFlow")

    def run_flow(self, config: RunConfig, timeout: float = None) -> dict:
        """Run a flow to completion on the cluster and return its report."""
        LOG.info("Submitting flow %s (%d input file(s))", config.flow_name, len(config.inputs))
        try:
            response = self._run_flow({"config": config.to_dict()}, timeout=timeout)
        except grpc.RpcError as e:
            raise PipelineError(f"gRPC error: {e}") from e
        if not response.get("ok"):
            raise PipelineError(f"Flow {config.flow_name} failed: {response.get('message')}")
        return response["report"]

    def close(self):
        self.channel.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
