import json
from urllib.parse import quote_plus

import aio_pika
from dotenv import load_dotenv

load_dotenv()
from core.logger import setup_logger

logger = setup_logger(__name__)

FLOW_EXECUTIONS_QUEUE = "flow_executions"


class RabbitMQClient:
    def __init__(self):
        self.connection = None
        self.channel = None

    @property
    def is_connected(self) -> bool:
        return bool(self.channel and not self.channel.is_closed)

    def _build_dsn(self) -> str:
        # Configurações do banco de dados (prioridade) ou env
        from config_loader import get_settings

        s = get_settings()
        host = s["RABBITMQ_HOST"]
        port = int(s["RABBITMQ_PORT"])
        # 5671 = porta padrão AMQPS
        scheme = "amqps" if port == 5671 else "amqp"
        # Senha codificada para não quebrar o DSN com caracteres especiais
        return f"{scheme}://{s['RABBITMQ_USER']}:{quote_plus(s['RABBITMQ_PASSWORD'])}@{host}:{port}/{quote_plus(s['RABBITMQ_VHOST'])}"

    async def connect(self):
        """Estabelece conexão com o RabbitMQ"""
        if self.connection and not self.connection.is_closed:
            return

        try:
            logger.info("🐇 Conectando ao RabbitMQ...")
            self.connection = await aio_pika.connect_robust(self._build_dsn())
            self.channel = await self.connection.channel()
            await self.channel.declare_queue(FLOW_EXECUTIONS_QUEUE, durable=True)
            logger.info("✅ Conectado ao RabbitMQ com sucesso!")
        except Exception as e:
            # Não derruba o app: sem fila, as execuções rodam em background na própria API
            logger.error(f"❌ Erro ao conectar no RabbitMQ: {e}")

    async def publish(self, queue_name: str, message: dict) -> bool:
        """Publica uma mensagem em uma fila específica"""
        if not self.is_connected:
            await self.connect()
        if not self.is_connected:
            return False

        try:
            await self.channel.default_exchange.publish(
                aio_pika.Message(
                    body=json.dumps(message).encode(),
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                ),
                routing_key=queue_name,
            )
            logger.debug(f"📤 Mensagem enviada para fila {queue_name}")
            return True
        except Exception as e:
            logger.error(f"❌ Erro ao publicar mensagem na fila {queue_name}: {e}")
            return False

    async def consume(self, queue_name: str, callback, prefetch_count: int = 1):
        """Inicia o consumo de mensagens de uma fila específica"""
        if not self.is_connected:
            await self.connect()
        if not self.is_connected:
            logger.error(f"❌ Sem conexão com o RabbitMQ. Fila {queue_name} não será consumida.")
            return

        await self.channel.set_qos(prefetch_count=prefetch_count)
        queue = await self.channel.declare_queue(queue_name, durable=True)

        async def wrapper(message: aio_pika.IncomingMessage):
            async with message.process():
                try:
                    body = json.loads(message.body.decode())
                    await callback(body)
                except Exception as e:
                    logger.error(f"❌ Erro no processamento da mensagem ({queue_name}): {e}")

        await queue.consume(wrapper)
        logger.info(f"👂 Consumidor conectado na fila {queue_name} (prefetch: {prefetch_count})")

    async def close(self):
        if self.connection:
            await self.connection.close()


rabbitmq = RabbitMQClient()
