"""Contract metadata model."""
from dataclasses import asdict, dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class ContractMetadata:
    """Verified source information for one contract, as reported by the explorer."""
    address: str
    source_code: str = ""
    abi: str = "[]"
    contract_name: str = ""
    compiler_version: str = ""
    compiler_type: str = "Solidity"
    optimization_used: bool = False
    runs: str = "0"
    constructor_arguments: str = ""
    evm_version: str = ""
    library: str = ""
    contract_file_name: str = ""
    license_type: str = ""
    proxy: str = ""
    implementation: str = ""
    swarm_source: str = ""
    similar_match: str = ""

    @property
    def is_proxy(self) -> bool:
        return self.proxy == "1"

    @property
    def is_verified(self) -> bool:
        return bool(self.source_code)

    @classmethod
    def from_etherscan(cls, address: str, item: Dict[str, Any]) -> "ContractMetadata":
        """Build from one ``getsourcecode`` result entry."""
        return cls(
            address=address.lower(),
            source_code=item.get("SourceCode") or "",
            abi=item.get("ABI") or "[]",
            contract_name=item.get("ContractName") or "",
            compiler_version=item.get("CompilerVersion") or "",
            compiler_type=item.get("CompilerType") or "Solidity",
            optimization_used=str(item.get("OptimizationUsed")) == "1",
            runs=str(item.get("Runs") or "0"),
            constructor_arguments=item.get("ConstructorArguments") or "",
            evm_version=item.get("EVMVersion") or "",
            library=item.get("Library") or "",
            contract_file_name=item.get("ContractFileName") or "",
            license_type=item.get("LicenseType") or "",
            proxy=str(item.get("Proxy") or ""),
            implementation=item.get("Implementation") or "",
            swarm_source=item.get("SwarmSource") or "",
            similar_match=item.get("SimilarMatch") or "",
        )

    def to_dict(self) -> Dict[str, Any]:
        """Explorer-style field names used in API responses."""
        return {
            "address": self.address,
            "SourceCode": self.source_code,
            "ABI": self.abi,
            "ContractName": self.contract_name,
            "CompilerVersion": self.compiler_version,
            "CompilerType": self.compiler_type,
            "OptimizationUsed": self.optimization_used,
            "Runs": self.runs,
            "ConstructorArguments": self.constructor_arguments,
            "EVMVersion": self.evm_version,
            "Library": self.library,
            "ContractFileName": self.contract_file_name,
            "LicenseType": self.license_type,
            "Proxy": self.proxy,
            "Implementation": self.implementation,
            "SwarmSource": self.swarm_source,
            "SimilarMatch": self.similar_match,
        }

    def to_cache(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_cache(cls, data: Dict[str, Any]) -> "ContractMetadata":
        return cls(**data)
