from callrelay.context.assembler import ContextAssembler, render_context

__all__ = ["ContextAssembler", "render_context"]
