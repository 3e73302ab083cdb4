from core.config import load_config
from tools.proof_gate_tool import ProofGateStateTool, make_web3

config = load_config()
tool = ProofGateStateTool(make_web3(config.chain.rpc_url), config.chain.proof_gate_module)
state = tool.read(config.chain.safe_address, agent=config.chain.agent_address)
print(f"policyHash:   {state.policy_commitment}")
print(f"nonce:        {state.counter}")
print(f"agentEnabled: {state.agent_authorized}")
