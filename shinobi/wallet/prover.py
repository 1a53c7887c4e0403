"""
Groth16 proving through the snarkjs CLI.

Circuit artifacts (wasm, zkey, verification key) are loaded once per process
from local paths or HTTP(S) URLs and kept in memory; each proof run writes
them into a private temp directory for snarkjs.
"""
from __future__ import annotations

import asyncio
import json
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from shinobi import config
from shinobi.errors import ProofGenerationError
from shinobi.logging_config import get_logger

logger = get_logger("wallet.prover")

Proof = Dict[str, Any]
PublicSignals = List[str]


@dataclass(frozen=True)
class CircuitArtifacts:
    wasm: bytes
    zkey: bytes
    vkey: bytes


class ArtifactCache:
    def __init__(
        self,
        wasm_path: str = config.CIRCUIT_WASM,
        zkey_path: str = config.CIRCUIT_ZKEY,
        vkey_path: str = config.CIRCUIT_VKEY,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.paths = (wasm_path, zkey_path, vkey_path)
        self.timeout = timeout
        self._artifacts: Optional[CircuitArtifacts] = None
        self._lock = asyncio.Lock()

    async def _load_one(self, location: str, client: httpx.AsyncClient) -> bytes:
        if location.startswith(("http://", "https://")):
            response = await client.get(location)
            if response.status_code >= 400:
                raise ProofGenerationError(f"could not fetch circuit artifact {location}: HTTP {response.status_code}")
            return response.content
        path = Path(location)
        if not path.is_file():
            raise ProofGenerationError(f"circuit artifact not found: {path}")
        return await asyncio.to_thread(path.read_bytes)

    async def get(self) -> CircuitArtifacts:
        async with self._lock:
            if self._artifacts is None:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    try:
                        wasm, zkey, vkey = await asyncio.gather(
                            *(self._load_one(p, client) for p in self.paths)
                        )
                    except httpx.HTTPError as e:
                        raise ProofGenerationError(f"could not fetch circuit artifacts: {e}") from e
                self._artifacts = CircuitArtifacts(wasm=wasm, zkey=zkey, vkey=vkey)
                logger.info(
                    f"Circuit artifacts cached (wasm {len(wasm)} B, zkey {len(zkey)} B, vkey {len(vkey)} B)"
                )
            return self._artifacts


class Groth16Prover:
    """Interface every prover implements."""

    async def prove(self, inputs: Dict[str, Any]) -> Tuple[Proof, PublicSignals]:
        raise NotImplementedError

    async def verify(self, proof: Proof, public_signals: PublicSignals) -> bool:
        raise NotImplementedError


class SnarkjsProver(Groth16Prover):
    def __init__(
        self,
        artifacts: Optional[ArtifactCache] = None,
        snarkjs_bin: str = config.SNARKJS_BIN,
        timeout: float = config.PROVER_TIMEOUT,
    ):
        self.artifacts = artifacts or ArtifactCache()
        self.snarkjs_bin = snarkjs_bin
        self.timeout = timeout

    async def _run(self, args: List[str], cwd: Path) -> Tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self.snarkjs_bin, *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ProofGenerationError(f"snarkjs {args[0]} {args[1]} timed out after {self.timeout}s") from None
        return process.returncode, stdout.decode(errors="replace"), stderr.decode(errors="replace")

    async def prove(self, inputs: Dict[str, Any]) -> Tuple[Proof, PublicSignals]:
        artifacts = await self.artifacts.get()
        with tempfile.TemporaryDirectory(prefix="shinobi-prove-") as tmp:
            work = Path(tmp)
            (work / "circuit.wasm").write_bytes(artifacts.wasm)
            (work / "circuit.zkey").write_bytes(artifacts.zkey)
            (work / "input.json").write_text(json.dumps(inputs))
            try:
                code, out, err = await self._run(
                    ["groth16", "fullprove", "input.json", "circuit.wasm", "circuit.zkey", "proof.json", "public.json"],
                    work,
                )
            except OSError as e:
                raise ProofGenerationError(f"could not start snarkjs: {e}") from e
            if code != 0:
                raise ProofGenerationError(f"snarkjs fullprove failed (exit {code}): {(err or out)[:500]}")
            try:
                proof = json.loads((work / "proof.json").read_text())
                public_signals = json.loads((work / "public.json").read_text())
            except (OSError, ValueError) as e:
                raise ProofGenerationError(f"snarkjs produced unreadable output: {e}") from e
        return proof, [str(s) for s in public_signals]

    async def verify(self, proof: Proof, public_signals: PublicSignals) -> bool:
        artifacts = await self.artifacts.get()
        with tempfile.TemporaryDirectory(prefix="shinobi-verify-") as tmp:
            work = Path(tmp)
            (work / "vkey.json").write_bytes(artifacts.vkey)
            (work / "proof.json").write_text(json.dumps(proof))
            (work / "public.json").write_text(json.dumps(public_signals))
            try:
                code, out, err = await self._run(["groth16", "verify", "vkey.json", "public.json", "proof.json"], work)
            except (OSError, ProofGenerationError) as e:
                logger.error(f"snarkjs verify could not run: {e}")
                return False
        ok = code == 0 and "OK" in out
        if not ok:
            logger.error(f"snarkjs verify rejected the proof: {(err or out)[:300]}")
        return ok
