# clinic/kafka.py
import json

from aiokafka import AIOKafkaProducer

from clinic.config import KAFKA_BOOTSTRAP


def build_producer(bootstrap_servers: str = KAFKA_BOOTSTRAP) -> AIOKafkaProducer:
    return AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        value_serializer=lambda v: json.dumps(v, default=str).encode(),
        key_serializer=lambda v: str(v).encode(),
        linger_ms=5,
        acks="all",
        enable_idempotence=True,
    )


async def start_producer(producer: AIOKafkaProducer) -> AIOKafkaProducer:
    await producer.start()
    return producer


async def stop_producer(producer) -> None:
    if producer:
        await producer.stop()
