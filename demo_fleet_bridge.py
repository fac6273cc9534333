#!/usr/bin/env python3
"""Demo del FerryLink Bridge

Simula un ferry que publica telemetría a un broker de flota y un relay que
la reenvía a un broker "cloud" a través de un enlace inestable. Muestra en
vivo el estado de los bridges: reconexiones, mensajes en buffer y vaciados.

Si FERRYLINK_ENDPOINT está definido, el ferry publica al broker real
configurado por entorno en lugar del broker en memoria.
"""

import asyncio
import logging
import os
import random
import time
from typing import Optional

from rich.console import Console
from rich.live import Live
from rich.table import Table

from infrastructure.factory import create_bridge
from modules.ferrylink_bridge import BridgeConfig, BridgeEvent, MemoryBroker, MessageBridge
from services.cloud_relay import CloudRelay
from services.fleet_telemetry import FleetTelemetryClient

# Configurar logging
logging.basicConfig(
    level=logging.WARNING,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

FLEET_ID = "bcferries"
VESSELS = ["queen-of-oak-bay", "spirit-of-vancouver", "coastal-celebration"]


class FleetBridgeDemo:
    """Demostración del bridge con reconexión."""

    def __init__(self):
        self.console = Console()
        self.fleet_broker = MemoryBroker("hivemq")
        self.cloud_broker = MemoryBroker("awsiot")
        self.running = False

        self.ferry_bridge: Optional[MessageBridge] = None
        self.relay_source: Optional[MessageBridge] = None
        self.relay_destination: Optional[MessageBridge] = None
        self.telemetry: Optional[FleetTelemetryClient] = None
        self.relay: Optional[CloudRelay] = None
        self.outages = 0

    def create_bridges(self):
        """Crea los bridges del ferry y del relay."""
        if os.getenv("FERRYLINK_ENDPOINT"):
            self.console.print("[cyan]Usando broker configurado por entorno[/cyan]")
            self.ferry_bridge = create_bridge(BridgeConfig.from_env(), name="ferry")
        else:
            self.ferry_bridge = create_bridge(
                BridgeConfig(endpoint=self.fleet_broker.endpoint, client_id="ferry-sim",
                             base_delay=0.5, max_delay=4.0),
                broker=self.fleet_broker,
                name="ferry"
            )

        self.relay_source = create_bridge(
            BridgeConfig(endpoint=self.fleet_broker.endpoint, client_id="relay-source",
                         base_delay=0.5, max_delay=4.0),
            broker=self.fleet_broker,
            name="relay-origen"
        )
        self.relay_destination = create_bridge(
            BridgeConfig(endpoint=self.cloud_broker.endpoint, client_id="relay-cloud",
                         base_delay=0.5, max_delay=4.0, buffer_capacity=200),
            broker=self.cloud_broker,
            name="relay-cloud"
        )

        self.relay_destination.on(BridgeEvent.RECONNECTING, lambda e: logger.info(
            f"Cloud: reintento {e.attempt} en {e.delay:.1f}s"
        ))

        self.telemetry = FleetTelemetryClient(self.ferry_bridge, FLEET_ID)
        self.relay = CloudRelay(self.relay_source, self.relay_destination, FLEET_ID)

    async def simulate_ferry(self):
        """Publica telemetría y, de vez en cuando, una emergencia."""
        while self.running:
            vessel = random.choice(VESSELS)
            await self.telemetry.publish_telemetry(vessel, {
                "engine": {"rpm": random.randint(600, 1200), "temperature": round(random.uniform(70, 95), 1)},
                "power": {"batteryLevel": round(random.uniform(40, 100), 1)},
                "navigation": {"speed": round(random.uniform(10, 21), 1)},
            })

            if random.random() < 0.05:
                await self.telemetry.publish_emergency(vessel, "fire", {
                    "location": "engine-room",
                    "severity": "critical",
                })

            await asyncio.sleep(0.2)

    async def simulate_outages(self):
        """Corta periódicamente el enlace con el broker cloud."""
        while self.running:
            await asyncio.sleep(random.uniform(3, 6))
            self.outages += 1
            self.cloud_broker.fail_next_connects(random.randint(1, 3))
            self.cloud_broker.drop_sessions("enlace satelital caído")

    def create_status_table(self) -> Table:
        """Crea tabla de estado en tiempo real."""
        table = Table(title="FerryLink Bridge")
        table.add_column("Bridge", style="cyan")
        table.add_column("Estado", style="green")
        table.add_column("Reintentos")
        table.add_column("Buffer")
        table.add_column("Enviados")
        table.add_column("Vaciados")
        table.add_column("Descartados")

        for bridge in (self.ferry_bridge, self.relay_source, self.relay_destination):
            status = bridge.get_status()
            stats = status["stats"]
            table.add_row(
                status["name"],
                status["state"],
                f"{status['retry_attempts']}/{status['max_reconnect_attempts']}",
                str(status["buffered_count"]),
                str(stats["sent"]),
                str(stats["flushed"]),
                str(stats["dropped"]),
            )

        relay_status = self.relay.get_status()
        table.caption = (
            f"Relay: {relay_status['messages_processed']} procesados, "
            f"{relay_status['messages_forwarded']} reenviados, "
            f"{relay_status['emergencies']} emergencias | "
            f"Cortes: {self.outages} | "
            f"Mensajes en cloud: {len(self.cloud_broker.published)}"
        )
        return table

    async def run_demo(self, duration: int = 30):
        """Ejecuta la demo completa.

        Args:
            duration: Duración de la demo en segundos
        """
        self.console.print(f"[green]Iniciando demo FerryLink por {duration} segundos...[/green]\n")

        self.create_bridges()
        await self.relay.start()
        await self.telemetry.start()

        if not await self.ferry_bridge.wait_connected(timeout=10):
            self.console.print("[red]✗[/red] El ferry no pudo conectar")
            return

        self.running = True
        tasks = [
            asyncio.create_task(self.simulate_ferry()),
            asyncio.create_task(self.simulate_outages()),
        ]

        try:
            start_time = time.time()
            with Live(self.create_status_table(), refresh_per_second=4) as live:
                while time.time() - start_time < duration:
                    await asyncio.sleep(0.25)
                    live.update(self.create_status_table())
        finally:
            self.running = False
            for task in tasks:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

            await self.telemetry.stop()
            await self.relay.stop()

        self.console.print(self.create_status_table())
        self.console.print("\n[green]✓[/green] Demo completada")


async def main():
    """Función principal de la demo."""
    demo = FleetBridgeDemo()
    await demo.run_demo()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nDemo terminada por el usuario")
