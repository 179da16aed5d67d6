"""
KMS plugin protocol, v1beta1.

The API server talks to the plugin over gRPC using the ``v1beta1.KeyManagementService``
service:

    rpc Version(VersionRequest) returns (VersionResponse)
    rpc Encrypt(EncryptRequest) returns (EncryptResponse)
    rpc Decrypt(DecryptRequest) returns (DecryptResponse)

The message classes are built at import time from a FileDescriptorProto, with
the same field numbers as the upstream proto, so no generated stubs are needed.
"""

from google.protobuf import descriptor_pb2, descriptor_pool, message_factory

API_VERSION = "v1beta1"
RUNTIME_NAME = "GCP Secret Manager"
RUNTIME_VERSION = "0.0.1"

PACKAGE = "v1beta1"
SERVICE_NAME = f"{PACKAGE}.KeyManagementService"

_STRING = descriptor_pb2.FieldDescriptorProto.TYPE_STRING
_BYTES = descriptor_pb2.FieldDescriptorProto.TYPE_BYTES

# message name -> fields in field-number order
_MESSAGES = (
    ("VersionRequest", (("version", _STRING),)),
    ("VersionResponse", (("version", _STRING), ("runtime_name", _STRING), ("runtime_version", _STRING))),
    ("EncryptRequest", (("version", _STRING), ("plain", _BYTES))),
    ("EncryptResponse", (("cipher", _BYTES),)),
    ("DecryptRequest", (("version", _STRING), ("cipher", _BYTES))),
    ("DecryptResponse", (("plain", _BYTES),)),
)

# rpc name -> (request message, response message)
METHODS = {
    "Version": ("VersionRequest", "VersionResponse"),
    "Encrypt": ("EncryptRequest", "EncryptResponse"),
    "Decrypt": ("DecryptRequest", "DecryptResponse"),
}


def _file_descriptor_proto() -> descriptor_pb2.FileDescriptorProto:
    fdp = descriptor_pb2.FileDescriptorProto(
        name="kmsplugin/v1beta1/service.proto",
        package=PACKAGE,
        syntax="proto3",
    )
    for msg_name, fields in _MESSAGES:
        msg = fdp.message_type.add(name=msg_name)
        for number, (field_name, field_type) in enumerate(fields, start=1):
            msg.field.add(
                name=field_name,
                number=number,
                type=field_type,
                label=descriptor_pb2.FieldDescriptorProto.LABEL_OPTIONAL,
            )

    service = fdp.service.add(name="KeyManagementService")
    for rpc_name, (request, response) in METHODS.items():
        service.method.add(
            name=rpc_name,
            input_type=f".{PACKAGE}.{request}",
            output_type=f".{PACKAGE}.{response}",
        )
    return fdp


# private pool so this never collides with another v1beta1 package in the process
_pool = descriptor_pool.DescriptorPool()
_pool.AddSerializedFile(_file_descriptor_proto().SerializeToString())


def _message_class(name: str):
    return message_factory.GetMessageClass(_pool.FindMessageTypeByName(f"{PACKAGE}.{name}"))


VersionRequest = _message_class("VersionRequest")
VersionResponse = _message_class("VersionResponse")
EncryptRequest = _message_class("EncryptRequest")
EncryptResponse = _message_class("EncryptResponse")
DecryptRequest = _message_class("DecryptRequest")
DecryptResponse = _message_class("DecryptResponse")

MESSAGE_CLASSES = {
    "VersionRequest": VersionRequest,
    "VersionResponse": VersionResponse,
    "EncryptRequest": EncryptRequest,
    "EncryptResponse": EncryptResponse,
    "DecryptRequest": DecryptRequest,
    "DecryptResponse": DecryptResponse,
}


def method_path(rpc_name: str) -> str:
    """Full gRPC method path, e.g. ``/v1beta1.KeyManagementService/Encrypt``."""
    if rpc_name not in METHODS:
        raise KeyError(f"unknown rpc {rpc_name!r}")
    return f"/{SERVICE_NAME}/{rpc_name}"


def request_class(rpc_name: str):
    return MESSAGE_CLASSES[METHODS[rpc_name][0]]


def response_class(rpc_name: str):
    return MESSAGE_CLASSES[METHODS[rpc_name][1]]
