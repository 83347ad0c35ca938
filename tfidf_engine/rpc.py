"""gRPC plumbing shared by master, workers and clients.

Messages are ``google.protobuf.Struct`` values, so the services are
registered through generic method handlers and need no generated stubs.
"""

from typing import Callable, Dict

import grpc
from google.protobuf import json_format, struct_pb2

MASTER_SERVICE = "tfidf.Master"
REGISTRY_SERVICE = "tfidf.Registry"
WORKER_SERVICE = "tfidf.WorkerTask"


def _restore_ints(value):
    # Struct stores every number as a double.
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {k: _restore_ints(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_restore_ints(v) for v in value]
    return value


def encode(payload: dict) -> bytes:
    message = struct_pb2.Struct()
    message.update(payload)
    return message.SerializeToString()


def decode(data: bytes) -> dict:
    return _restore_ints(json_format.MessageToDict(struct_pb2.Struct.FromString(data)))


def service_handler(service: str, methods: Dict[str, Callable[[dict], dict]]) -> grpc.GenericRpcHandler:
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            lambda request, context, fn=fn: fn(request),
            request_deserializer=decode,
            response_serializer=encode,
        )
        for name, fn in methods.items()
    }
    return grpc.method_handlers_generic_handler(service, handlers)


def stub(channel: grpc.Channel, service: str, method: str):
    return channel.unary_unary(f"/{service}/{method}", request_serializer=encode, response_deserializer=decode)
